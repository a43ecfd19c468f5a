from __future__ import annotations

from typing import Any

from pseudollama.types import BackendKind


class ProxyError(Exception):
    http_status = 500
    error_type = "server_error"
    code = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ProxyError):
    http_status = 400
    error_type = "invalid_request_error"
    code = "invalid_request"

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"Missing required field: {field}")


class BackendUnconfigured(ProxyError):
    http_status = 503
    error_type = "server_error"
    code = "backend_unconfigured"

    def __init__(self, kind: BackendKind, reason: str | None = None):
        self.kind = kind
        detail = reason or (
            "an API key is required"
            if kind is BackendKind.CLOUD
            else "an endpoint URL is required"
        )
        super().__init__(f"The {kind.value} backend is not configured: {detail}.")


class BackendUnreachable(ProxyError):
    http_status = 502
    error_type = "upstream_connection_error"
    code = "backend_unreachable"

    def __init__(
        self,
        kind: BackendKind,
        *,
        reason: str,
        error_type: str,
        is_timeout: bool = False,
    ):
        self.kind = kind
        self.reason = reason
        self.transport_error = error_type
        self.is_timeout = is_timeout
        verb = "timed out" if is_timeout else "could not be reached"
        super().__init__(
            f"The {kind.value} backend {verb} ({error_type}): {reason}",
            details={"backend": kind.value, "error_type": error_type},
        )


class BackendRejected(ProxyError):
    http_status = 502
    error_type = "upstream_error"
    code = "backend_rejected"

    def __init__(self, kind: BackendKind, *, status_code: int, reason: str):
        self.kind = kind
        self.status_code = status_code
        self.reason = reason
        super().__init__(
            f"The {kind.value} backend returned HTTP {status_code}: {reason}",
            details={"backend": kind.value, "status_code": status_code},
        )


class TranslationError(ProxyError):
    http_status = 502
    error_type = "upstream_error"
    code = "invalid_backend_response"

    def __init__(
        self,
        kind: BackendKind,
        message: str,
        *,
        status_code: int | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        super().__init__(
            f"The {kind.value} backend sent an unexpected response: {message}",
            details={"backend": kind.value, "status_code": status_code},
        )


__all__ = [
    "BackendRejected",
    "BackendUnconfigured",
    "BackendUnreachable",
    "ProxyError",
    "TranslationError",
    "ValidationError",
]
