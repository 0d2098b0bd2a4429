"""
Outbound HTTP with a middleware chain.

Every call to an authorization server or PDS goes through
:class:`ChainMiddlewareClient`. Middleware wrap the send in order (metrics
first, DPoP signing last) and may ask for the request to be replayed, which
is how the ``use_dpop_nonce`` handshake is done.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partialmethod
import json
import logging
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)
from aiohttp import web, ClientResponse, ClientSession, ClientTimeout, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from jwcrypto import jwk

from social.skyreader.auth.app.metrics import MetricsClient
from social.skyreader.auth.atproto.errors import NonceRetryExhaustedError
from social.skyreader.auth.atproto.jwt import create_dpop_proof

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            try:
                body = await response.json()
            except ValueError:
                body = await response.text()
            return ChainResponse(status=status, headers=headers, body=body)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def error_code(self) -> Optional[str]:
        if isinstance(self.body, dict):
            error = self.body.get("error", None)
            if isinstance(error, str):
                return error
        return None

    def to_web_response(self) -> web.Response:
        rargs: Dict[str, Any] = {
            "status": self.status,
            "headers": {"Content-Type": self.headers.get(hdrs.CONTENT_TYPE, "")},
        }
        if isinstance(self.body, str):
            rargs["text"] = self.body
        elif isinstance(self.body, bytes):
            rargs["body"] = self.body
        elif isinstance(self.body, dict):
            rargs["body"] = json.dumps(self.body)
        return web.Response(**rargs)


def is_use_dpop_nonce(response: ChainResponse) -> bool:
    """
    Detect a ``use_dpop_nonce`` challenge.

    Authorization servers put the error in the JSON body (400), resource
    servers put it in the ``WWW-Authenticate`` header (401).
    """
    if response.status not in (400, 401):
        return False
    if response.body_matches_kv("error", "use_dpop_nonce"):
        return True
    www_authenticate = response.headers.get(hdrs.WWW_AUTHENTICATE, "")
    return 'error="use_dpop_nonce"' in www_authenticate


class ChainResult(NamedTuple):
    """
    What a middleware hands back up the chain.

    ``retry`` is set when the request must be sent again, for example with a
    server-provided DPoP nonce. The context replays it from the top of the
    chain.
    """

    client_response: ClientResponse
    chain_response: ChainResponse
    retry: Optional[ChainRequest] = None


NextChainCallbackType = Callable[[ChainRequest], Awaitable[ChainResult]]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        pass

    def wrap(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> ChainResult:
            return await self.handle(next, request)

        return next_invoke


class MetricsMiddleware(RequestMiddlewareBase):
    """Count and time outbound calls, tagged by ``operation``."""

    def __init__(self, metrics_client: MetricsClient, operation: str) -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._operation = operation

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        start_time = time()
        status = 0
        try:
            result = await next(request)
            status = result.chain_response.status
            return result
        except Exception as e:
            self._metrics_client.increment(
                "skyreader.auth.client.exception",
                1,
                tag_dict={
                    "operation": self._operation,
                    "exception": type(e).__name__,
                },
            )
            raise
        finally:
            self._metrics_client.timer(
                "skyreader.auth.client.time",
                time() - start_time,
                tag_dict={"operation": self._operation},
            )
            self._metrics_client.increment(
                "skyreader.auth.client.count",
                1,
                tag_dict={"operation": self._operation, "status": status},
            )


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Sign every outgoing request with a fresh DPoP proof.

    The nonce handshake is a two-state machine: the first attempt uses the
    caller's nonce (if any). A ``use_dpop_nonce`` answer with a ``DPoP-Nonce``
    header moves the middleware to the retried state and asks the chain to
    replay the request once. A second ``use_dpop_nonce`` in the retried state
    raises :class:`NonceRetryExhaustedError`.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        public_key_dict: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._public_key_dict = public_key_dict or dpop_key.export_public(
            as_dict=True
        )
        self._access_token = access_token
        self.nonce = nonce
        self.nonce_retried = False

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = create_dpop_proof(
            self._dpop_key,
            self._public_key_dict,
            request.method,
            str(request.url),
            nonce=self.nonce,
            access_token=self._access_token,
        )

        result = await next(request)
        server_nonce = result.chain_response.headers.get("DPoP-Nonce", None)

        if is_use_dpop_nonce(result.chain_response):
            if self.nonce_retried:
                raise NonceRetryExhaustedError(
                    f"{request.method} {request.url} demanded a new nonce after retry"
                )
            if not server_nonce:
                logger.warning(
                    "use_dpop_nonce without DPoP-Nonce header from %s", request.url
                )
                return result

            logger.debug("retrying %s %s with server nonce", request.method, request.url)
            self.nonce = server_nonce
            self.nonce_retried = True
            return result._replace(retry=ChainRequest.from_chain_request(request))

        if server_nonce:
            self.nonce = server_nonce

        return result


class SendRequest:
    """Last link of the chain: performs the HTTP call on the shared session."""

    def __init__(
        self,
        client_session: ClientSession,
        raise_for_status: bool = False,
        timeout: Optional[ClientTimeout] = None,
    ) -> None:
        self._client_session = client_session
        self._raise_for_status = raise_for_status
        self._timeout = timeout

    async def __call__(self, request: ChainRequest) -> ChainResult:
        logger.debug("sending %s %s", request.method, request.url)

        kwargs = dict(request.kwargs or {})
        if self._timeout is not None:
            kwargs.setdefault("timeout", self._timeout)

        response: ClientResponse = await self._client_session.request(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **kwargs,
        )

        if self._raise_for_status:
            response.raise_for_status()

        return ChainResult(response, await ChainResponse.from_aiohttp_response(response))


class ChainMiddlewareContext:
    """
    Async context manager around one logical request.

    Replays the request while a middleware asks for it, up to ``attempt_max``
    sends, and releases every response it opened.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max
        self.client_response: Optional[ClientResponse] = None

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request = self._chain_request

        for attempt in range(1, self._attempt_max + 1):
            logger.debug(
                "attempt %d of %d for %s %s",
                attempt,
                self._attempt_max,
                chain_request.method,
                chain_request.url,
            )

            result = await self._chain_callback(chain_request)
            if self.client_response is not None:
                self.client_response.release()
            self.client_response = result.client_response

            if result.retry is None:
                return result.client_response, result.chain_response
            chain_request = result.retry

        raise RuntimeError(
            f"{self._chain_request.method} {self._chain_request.url} "
            f"still asked for a retry after {self._attempt_max} attempts"
        )

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None:
            self.client_response.release()


class ChainMiddlewareClient:
    """
    Thin wrapper over a shared ``aiohttp.ClientSession`` that runs each
    request through a middleware chain.

    The session is owned by the application; closing this client never closes
    it.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        timeout: Optional[ClientTimeout] = None,
    ) -> None:
        self._middleware = list(middleware or [])
        self._client_session = client_session
        self._raise_for_status = raise_for_status
        self._timeout = timeout

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            kwargs=kwargs,
        )

        chain_callback: NextChainCallbackType = SendRequest(
            self._client_session,
            raise_for_status=(
                self._raise_for_status if raise_for_status is None else raise_for_status
            ),
            timeout=self._timeout,
        )
        for mw in reversed(self._middleware):
            chain_callback = mw.wrap(chain_callback)

        return ChainMiddlewareContext(chain_callback, chain_request)

    get = partialmethod(request, hdrs.METH_GET)
    post = partialmethod(request, hdrs.METH_POST)
