"""Typed error hierarchy for the proxy core.

Every failure that crosses the service boundary is an AntiProxyError so
callers can map it onto a protocol error event without string matching.
"""

from __future__ import annotations


class AntiProxyError(Exception):
    """Base error. ``error_type`` is the client-protocol error type."""

    code = "ANTI_ERROR"
    error_type = "api_error"

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    @classmethod
    def wrap(cls, err: Exception) -> AntiProxyError:
        if isinstance(err, AntiProxyError):
            return err
        return BackendProtocolError(f"Unexpected backend failure: {err}", err)


class NotAuthenticated(AntiProxyError):
    code = "NOT_AUTHENTICATED"
    error_type = "authentication_error"

    def __init__(self, message: str = "Not authenticated. Please login first.") -> None:
        super().__init__(message)


class CredentialRefreshFailed(AntiProxyError):
    code = "CREDENTIAL_REFRESH_FAILED"
    error_type = "authentication_error"

    def __init__(
        self,
        message: str = "Token expired and refresh failed. Please re-login.",
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause)


class BackendUnavailable(AntiProxyError):
    """All candidate endpoints failed. ``cause`` is the last failure."""

    code = "BACKEND_UNAVAILABLE"
    error_type = "api_error"

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        attempts: list[tuple[str, str]] | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.attempts = attempts or []


class LocalServiceNotInitialized(AntiProxyError):
    code = "LOCAL_SERVICE_NOT_INITIALIZED"
    error_type = "api_error"


class BackendProtocolError(AntiProxyError):
    code = "BACKEND_PROTOCOL_ERROR"
    error_type = "api_error"


class ResponseTimeout(AntiProxyError):
    code = "RESPONSE_TIMEOUT"
    error_type = "timeout_error"

    def __init__(self, timeout: float, cascade_id: str = "") -> None:
        super().__init__(f"No response from cascade {cascade_id or '?'} within {timeout:.1f}s")
        self.timeout = timeout
        self.cascade_id = cascade_id


class OAuthError(AntiProxyError):
    """Identity provider rejected a token request."""

    code = "OAUTH_ERROR"
    error_type = "authentication_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownBackend(AntiProxyError):
    """Requested backend is not configured."""

    code = "UNKNOWN_BACKEND"
    error_type = "invalid_request_error"
