"""
Exception types raised by the key store, translator, upstream clients and
request handlers.

Each client-facing error carries the HTTP status it maps to; the FastAPI
exception handler in proxy.py renders it in the caller's wire format.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for errors that end up as a JSON error envelope."""

    status_code = 500
    error_type = "api_error"

    def __init__(self, message: str, api_format: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # "openai", "anthropic" or None (admin routes)
        self.api_format = api_format


class NoKeysAvailable(ProxyError):
    status_code = 503


class InvalidKey(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class IndexOutOfRange(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class InvalidRequest(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class ServiceUnavailable(ProxyError):
    status_code = 503


class AdminAuthError(ProxyError):
    status_code = 401
    error_type = "authentication_error"


class UpstreamError(ProxyError):
    """
    Upstream call failed (transport error, non-2xx, unparseable body).

    `detail` holds what the upstream said and is only ever logged.
    """

    status_code = 500

    def __init__(self, detail: str, status: Optional[int] = None):
        super().__init__("Internal server error")
        self.detail = detail
        self.upstream_status = status

    def __str__(self) -> str:
        if self.upstream_status is not None:
            return f"upstream returned {self.upstream_status}: {self.detail}"
        return self.detail


class PersistenceError(Exception):
    """Key file could not be read or written. Never shown to clients."""
