"""Typed failures for the login and session lifecycle.

Every exception carries a stable ``code`` for logs and metrics and a
``public_message`` that is safe to show to an end user. The string form of the
exception keeps the internal detail for logs and Sentry; handlers must only
ever return ``public_message`` to clients.
"""

from typing import Optional


ACCOUNT_NOT_FOUND = "Could not find your account"
LOGIN_FAILED = "Login failed, please try again"
UNAUTHORIZED = "Unauthorized"


class AuthFlowException(Exception):
    """Base class for all typed failures raised by this package."""

    code: str = "error-auth-1999"
    public_message: str = LOGIN_FAILED

    def __init__(self, detail: str = "") -> None:
        super().__init__(f"{self.code} {detail}".strip())
        self.detail = detail


class HandleResolutionError(AuthFlowException):
    code = "error-auth-1000"
    public_message = ACCOUNT_NOT_FOUND


class DidResolutionError(AuthFlowException):
    code = "error-auth-1001"
    public_message = ACCOUNT_NOT_FOUND


class MetadataFetchError(AuthFlowException):
    code = "error-auth-1002"
    public_message = ACCOUNT_NOT_FOUND


class AuthorizationRequestError(AuthFlowException):
    code = "error-auth-1100"


class InvalidStateError(AuthFlowException):
    """The callback state is unknown, expired or was already consumed."""

    code = "error-auth-1200"
    public_message = "Invalid or expired login attempt, please start again"


class TokenExchangeError(AuthFlowException):
    code = "error-auth-1300"


class NonceRetryExhaustedError(TokenExchangeError):
    """The server demanded a fresh DPoP nonce on the retry as well."""

    code = "error-auth-1301"


class IdentityMismatchError(AuthFlowException):
    """The token subject does not match the DID the login was started for."""

    code = "error-auth-1400"
    public_message = "Account verification failed"

    def __init__(self, expected: str, actual: Optional[str]) -> None:
        super().__init__(f"expected subject {expected} got {actual}")
        self.expected = expected
        self.actual = actual


class RefreshError(AuthFlowException):
    """A refresh attempt failed.

    ``terminal`` is set when the authorization server rejected the refresh
    token itself (for example ``invalid_grant``). Such a session is locked out
    at once and can only be recovered by logging in again.
    """

    code = "error-auth-1500"
    public_message = UNAUTHORIZED

    def __init__(self, detail: str = "", terminal: bool = False) -> None:
        super().__init__(detail)
        self.terminal = terminal


class SessionNotFoundError(AuthFlowException):
    code = "error-auth-1600"
    public_message = UNAUTHORIZED


class SessionExpiredError(AuthFlowException):
    code = "error-auth-1601"
    public_message = UNAUTHORIZED
