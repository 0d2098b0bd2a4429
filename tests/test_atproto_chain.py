"""
Unit tests for the outbound HTTP middleware chain.

Tests cover response wrapping, the DPoP nonce handshake (exactly one retry),
metrics recording and argument pass-through to the shared client session.
"""

import json
from unittest.mock import Mock

import pytest
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.skyreader.auth.atproto.chain import (
    ChainMiddlewareClient,
    ChainRequest,
    ChainResponse,
    GenerateDpopMiddleware,
    MetricsMiddleware,
    is_use_dpop_nonce,
)
from social.skyreader.auth.atproto.errors import NonceRetryExhaustedError
from social.skyreader.auth.atproto.jwt import access_token_hash, generate_dpop_key
from tests.test_helpers import create_mock_response


def create_headers_proxy(headers_list):
    """Create CIMultiDictProxy from list of tuples."""
    return CIMultiDictProxy(CIMultiDict(headers_list))


def proof_claims(proof: str, public_key_dict) -> dict:
    verified = jwt.JWT(jwt=proof, key=jwk.JWK(**public_key_dict))
    return json.loads(verified.claims)


def create_client_session(*responses) -> Mock:
    client_session = Mock()
    client_session.request = Mock()

    async def request(*args, **kwargs):
        return next(queue)

    queue = iter(responses)
    client_session.request.side_effect = request
    return client_session


class TestChainRequest:
    """Test ChainRequest dataclass and methods."""

    def test_from_chain_request_copies_headers(self):
        original = ChainRequest(
            method="POST",
            url="https://auth.example.com/token",
            headers={"DPoP": "first"},
            kwargs={"data": {"grant_type": "refresh_token"}},
        )

        copy = ChainRequest.from_chain_request(original)
        copy.headers["DPoP"] = "second"

        assert original.headers == {"DPoP": "first"}
        assert copy.kwargs == original.kwargs
        assert copy is not original


class TestChainResponse:
    """Test ChainResponse helpers."""

    def test_ok_range(self):
        headers = create_headers_proxy([])
        assert ChainResponse(status=201, headers=headers).ok
        assert not ChainResponse(status=302, headers=headers).ok
        assert not ChainResponse(status=400, headers=headers).ok

    def test_body_matches_kv(self):
        response = ChainResponse(
            status=400,
            headers=create_headers_proxy([]),
            body={"error": "invalid_grant"},
        )
        assert response.body_matches_kv("error", "invalid_grant")
        assert not response.body_matches_kv("error", "use_dpop_nonce")
        assert response.error_code() == "invalid_grant"

    def test_error_code_on_text_body(self):
        response = ChainResponse(
            status=500, headers=create_headers_proxy([]), body="oops"
        )
        assert response.error_code() is None

    def test_to_web_response_with_json_body(self):
        response = ChainResponse(
            status=200,
            headers=create_headers_proxy([("Content-Type", "application/json")]),
            body={"did": "did:plc:abc"},
        )

        web_response = response.to_web_response()
        assert web_response.status == 200
        assert json.loads(web_response.body) == {"did": "did:plc:abc"}

    @pytest.mark.asyncio
    async def test_from_aiohttp_text_response(self):
        client_response = create_mock_response(
            status=200, content_type="text/plain", body="did:plc:abc"
        )
        response = await ChainResponse.from_aiohttp_response(client_response)
        assert response.body == "did:plc:abc"


class TestIsUseDpopNonce:
    """Test nonce challenge detection."""

    def test_body_error(self):
        response = ChainResponse(
            status=400,
            headers=create_headers_proxy([]),
            body={"error": "use_dpop_nonce"},
        )
        assert is_use_dpop_nonce(response)

    def test_www_authenticate_header(self):
        response = ChainResponse(
            status=401,
            headers=create_headers_proxy(
                [("WWW-Authenticate", 'DPoP error="use_dpop_nonce"')]
            ),
            body=b"",
        )
        assert is_use_dpop_nonce(response)

    def test_other_status_ignored(self):
        response = ChainResponse(
            status=500,
            headers=create_headers_proxy([]),
            body={"error": "use_dpop_nonce"},
        )
        assert not is_use_dpop_nonce(response)


class TestGenerateDpopMiddleware:
    """Test the DPoP nonce handshake."""

    @pytest.mark.asyncio
    async def test_retries_once_with_server_nonce(self):
        dpop_key, public_key_dict = generate_dpop_key()
        client_session = create_client_session(
            create_mock_response(
                status=400,
                headers={"DPoP-Nonce": "nonce-1"},
                body={"error": "use_dpop_nonce"},
            ),
            create_mock_response(status=200, body={"access_token": "at"}),
        )
        dpop_middleware = GenerateDpopMiddleware(dpop_key, public_key_dict)
        chain_client = ChainMiddlewareClient(
            client_session=client_session, middleware=[dpop_middleware]
        )

        async with chain_client.post(
            "https://auth.example.com/token", data={"grant_type": "authorization_code"}
        ) as (_, chain_response):
            assert chain_response.status == 200
            assert chain_response.body == {"access_token": "at"}

        assert client_session.request.call_count == 2
        first_call, second_call = client_session.request.call_args_list

        first_claims = proof_claims(first_call.kwargs["headers"]["DPoP"], public_key_dict)
        second_claims = proof_claims(
            second_call.kwargs["headers"]["DPoP"], public_key_dict
        )
        assert "nonce" not in first_claims
        assert second_claims["nonce"] == "nonce-1"
        assert first_claims["jti"] != second_claims["jti"]
        assert second_call.kwargs["data"] == {"grant_type": "authorization_code"}
        assert dpop_middleware.nonce_retried

    @pytest.mark.asyncio
    async def test_second_nonce_challenge_fails(self):
        dpop_key, public_key_dict = generate_dpop_key()
        client_session = create_client_session(
            create_mock_response(
                status=400,
                headers={"DPoP-Nonce": "nonce-1"},
                body={"error": "use_dpop_nonce"},
            ),
            create_mock_response(
                status=400,
                headers={"DPoP-Nonce": "nonce-2"},
                body={"error": "use_dpop_nonce"},
            ),
        )
        chain_client = ChainMiddlewareClient(
            client_session=client_session,
            middleware=[GenerateDpopMiddleware(dpop_key, public_key_dict)],
        )

        with pytest.raises(NonceRetryExhaustedError):
            async with chain_client.post("https://auth.example.com/token"):
                pass

        assert client_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_challenge_without_nonce_header_is_returned(self):
        dpop_key, _ = generate_dpop_key()
        client_session = create_client_session(
            create_mock_response(status=400, body={"error": "use_dpop_nonce"}),
        )
        chain_client = ChainMiddlewareClient(
            client_session=client_session,
            middleware=[GenerateDpopMiddleware(dpop_key)],
        )

        async with chain_client.post("https://auth.example.com/token") as (
            _,
            chain_response,
        ):
            assert chain_response.status == 400

        assert client_session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_resource_request_carries_ath(self):
        dpop_key, public_key_dict = generate_dpop_key()
        client_session = create_client_session(
            create_mock_response(status=200, body={"handle": "alice.example.com"}),
        )
        chain_client = ChainMiddlewareClient(
            client_session=client_session,
            middleware=[GenerateDpopMiddleware(dpop_key, access_token="access-token")],
        )

        async with chain_client.get(
            "https://pds.example.com/xrpc/app.bsky.actor.getProfile",
            params={"actor": "did:plc:abc"},
        ):
            pass

        call = client_session.request.call_args
        claims = proof_claims(call.kwargs["headers"]["DPoP"], public_key_dict)
        assert claims["ath"] == access_token_hash("access-token")
        assert claims["htm"] == "GET"
        assert call.kwargs["params"] == {"actor": "did:plc:abc"}

    @pytest.mark.asyncio
    async def test_remembers_nonce_from_success(self):
        dpop_key, _ = generate_dpop_key()
        client_session = create_client_session(
            create_mock_response(status=200, headers={"DPoP-Nonce": "fresh"}),
        )
        dpop_middleware = GenerateDpopMiddleware(dpop_key, nonce="stale")
        chain_client = ChainMiddlewareClient(
            client_session=client_session, middleware=[dpop_middleware]
        )

        async with chain_client.get("https://pds.example.com/xrpc/a.b.c"):
            pass

        assert dpop_middleware.nonce == "fresh"
        assert not dpop_middleware.nonce_retried


class TestMetricsMiddleware:
    """Test outbound call metrics."""

    @pytest.mark.asyncio
    async def test_records_status_and_time(self):
        metrics_client = Mock()
        client_session = create_client_session(create_mock_response(status=201))
        chain_client = ChainMiddlewareClient(
            client_session=client_session,
            middleware=[MetricsMiddleware(metrics_client, "token_exchange")],
        )

        async with chain_client.post("https://auth.example.com/token"):
            pass

        metrics_client.increment.assert_called_once_with(
            "skyreader.auth.client.count",
            1,
            tag_dict={"operation": "token_exchange", "status": 201},
        )
        assert metrics_client.timer.call_count == 1

    @pytest.mark.asyncio
    async def test_records_exception(self):
        metrics_client = Mock()
        client_session = Mock()

        async def request(*args, **kwargs):
            raise TimeoutError()

        client_session.request = Mock(side_effect=request)
        chain_client = ChainMiddlewareClient(
            client_session=client_session,
            middleware=[MetricsMiddleware(metrics_client, "par")],
        )

        with pytest.raises(TimeoutError):
            async with chain_client.post("https://auth.example.com/par"):
                pass

        exception_calls = [
            c
            for c in metrics_client.increment.call_args_list
            if c.args[0] == "skyreader.auth.client.exception"
        ]
        assert len(exception_calls) == 1
        assert exception_calls[0].kwargs["tag_dict"]["exception"] == "TimeoutError"
