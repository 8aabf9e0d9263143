from __future__ import annotations

import json
from enum import Enum
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class ErrorType(str, Enum):
    TIMEOUT = "timeout_error"
    NETWORK = "network_error"
    AUTH = "auth_error"
    RATE_LIMIT = "rate_limit_error"
    VALIDATION = "validation_error"


class ProxyError(Exception):
    """Base class for failures rendered to the client as the standard error body."""

    error_type: ErrorType = ErrorType.NETWORK
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        if status_code is not None:
            self.status_code = status_code
        self.headers = dict(headers or {})

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": True,
            "error_type": self.error_type.value,
            "message": self.message,
        }

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_payload(),
            headers={"Cache-Control": "no-cache", **self.headers},
        )


class AuthError(ProxyError):
    error_type = ErrorType.AUTH
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidRequestError(ProxyError):
    error_type = ErrorType.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class MethodNotAllowedError(InvalidRequestError):
    status_code = status.HTTP_405_METHOD_NOT_ALLOWED

    def __init__(self, message: str = "Method not allowed") -> None:
        super().__init__(message)


class RateLimitError(ProxyError):
    error_type = ErrorType.RATE_LIMIT
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after_seconds: int, message: str = "Too Many Requests") -> None:
        super().__init__(message, headers={"Retry-After": str(retry_after_seconds)})
        self.retry_after_seconds = retry_after_seconds


class UpstreamTimeoutError(ProxyError):
    error_type = ErrorType.TIMEOUT


class UpstreamRequestError(ProxyError):
    """The upstream request failed in a way that retrying cannot fix."""

    def __init__(self, reason: str, detail: str = "") -> None:
        message = f"Upstream request failed ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.reason = reason


class UpstreamStatusError(ProxyError):
    """Raised when the upstream answers with a non-2xx status that is not retried."""

    def __init__(self, status_code: int, body_excerpt: str = "") -> None:
        super().__init__(f"Upstream API error: {status_code}")
        self.upstream_status = status_code
        self.body_excerpt = body_excerpt


class RetryExhaustedError(ProxyError):
    """Every attempt of a resilient fetch failed; carries diagnostics of the last one."""

    def __init__(
        self,
        *,
        attempts: int,
        reason: str,
        last_status: int | None = None,
        body_excerpt: str = "",
        response_headers: dict[str, str] | None = None,
    ) -> None:
        status_text = str(last_status) if last_status is not None else "none"
        super().__init__(
            "All retry attempts failed "
            f"(attempts={attempts} last_status={status_text} reason={reason})"
        )
        self.attempts = attempts
        self.reason = reason
        self.last_status = last_status
        self.body_excerpt = body_excerpt
        self.response_headers = dict(response_headers or {})


class StreamError(ProxyError):
    """Failure after the streaming response has started; reported in-band."""

    def to_record(self) -> bytes:
        return _error_record(self.to_payload())


class StreamTimeoutError(StreamError):
    error_type = ErrorType.TIMEOUT


def stream_error_record(exc: BaseException) -> bytes:
    if isinstance(exc, StreamError):
        return exc.to_record()
    if isinstance(exc, ProxyError):
        return _error_record(exc.to_payload())
    return _error_record(
        {
            "error": True,
            "error_type": ErrorType.NETWORK.value,
            "message": str(exc) or exc.__class__.__name__,
        }
    )


def _error_record(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")
