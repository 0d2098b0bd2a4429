"""
Common testing utilities.

Provides fake aiohttp responses and a routing fake of the shared client
session, factories for session records, and assertions for model rows.
"""

import json
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock, Mock

from aiohttp import ClientResponse, hdrs
from multidict import CIMultiDict, CIMultiDictProxy

from social.skyreader.auth.atproto.jwt import export_dpop_key, generate_dpop_key
from social.skyreader.auth.model.base import Base
from social.skyreader.auth.model.oauth import Session


def generate_test_datetime(offset_seconds: int = 0) -> datetime:
    """Generate a timezone-aware datetime for testing."""
    return datetime.now(timezone.utc) + timedelta(seconds=offset_seconds)


def assert_model_fields_match(
    model_instance: Base, expected_data: Dict[str, Any]
) -> None:
    """Assert that all fields in expected_data match the model instance."""
    for field_name, expected_value in expected_data.items():
        actual_value = getattr(model_instance, field_name)
        assert (
            actual_value == expected_value
        ), f"Field {field_name}: expected {expected_value}, got {actual_value}"


def create_mock_response(
    status: int = 200,
    headers: Optional[Dict[str, str]] = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = content_type
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if content_type.startswith("application/json"):
        mock_response.json = AsyncMock(return_value=body if body is not None else {})
        mock_response.text = AsyncMock(return_value=json.dumps(body or {}))
        mock_response.read = AsyncMock(return_value=json.dumps(body or {}).encode())
    elif content_type.startswith("text/"):
        text_body = str(body) if body is not None else ""
        mock_response.text = AsyncMock(return_value=text_body)
        mock_response.read = AsyncMock(return_value=text_body.encode())
    else:
        binary_body = body if isinstance(body, bytes) else b""
        mock_response.read = AsyncMock(return_value=binary_body)

    mock_response.raise_for_status = Mock()
    mock_response.release = Mock()

    return mock_response


class _ResponseContext:
    def __init__(self, response: ClientResponse) -> None:
        self._response = response

    async def __aenter__(self) -> ClientResponse:
        return self._response

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None


class FakeHttpSession:
    """
    Stand-in for the shared ``aiohttp.ClientSession``.

    Responses are queued per ``(METHOD, url)``; the last queued response for a
    route is reused once the queue is drained. Unknown routes answer 404.
    Every call is recorded in ``calls`` as ``(method, url, kwargs)``.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, method: str, url: str, *responses: Any) -> "FakeHttpSession":
        self.routes.setdefault((method.upper(), url), []).extend(responses)
        return self

    def add_json(
        self, method: str, url: str, body: Any, status: int = 200, **kwargs
    ) -> "FakeHttpSession":
        return self.add(
            method, url, create_mock_response(status=status, body=body, **kwargs)
        )

    def calls_to(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [
            kwargs
            for (m, u, kwargs) in self.calls
            if m == method.upper() and u == url
        ]

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]) -> ClientResponse:
        method = method.upper()
        url = str(url)
        self.calls.append((method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            return create_mock_response(status=404, body={"error": "NotFound"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response

    def get(self, url: str, **kwargs: Any) -> _ResponseContext:
        return _ResponseContext(self._next("GET", url, kwargs))

    async def request(self, method: str, url: str, **kwargs: Any) -> ClientResponse:
        return self._next(method, url, kwargs)


def create_session_record(
    encryption_key=None,
    expires_in: int = 3600,
    **overrides: Any,
) -> Session:
    """Build a session record with a real DPoP key."""
    now = datetime.now(timezone.utc)
    dpop_key, _ = generate_dpop_key()
    data: Dict[str, Any] = {
        "session_id": "session-1",
        "did": "did:plc:alice",
        "handle": "alice.example.com",
        "pds_url": "https://pds.example.com",
        "authorization_server": "https://auth.example.com",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "dpop_private_key": export_dpop_key(dpop_key, encryption_key),
        "expires_at": now + timedelta(seconds=expires_in),
        "created_at": now,
    }
    data.update(overrides)
    return Session(**data)


def create_database_session_maker() -> Tuple[MagicMock, MagicMock]:
    """
    Stand-in for ``async_sessionmaker`` supporting
    ``async with maker() as s: async with s.begin(): await s.execute(...)``.

    Returns the maker and the session whose ``execute`` records statements.
    """
    database_session = MagicMock()
    database_session.execute = AsyncMock()
    database_session.begin.return_value.__aenter__.return_value = database_session

    database_session_maker = MagicMock()
    database_session_maker.return_value.__aenter__.return_value = database_session
    return database_session_maker, database_session
