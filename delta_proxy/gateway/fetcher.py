from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, cast

import httpx

from delta_proxy.errors import (
    RetryExhaustedError,
    UpstreamRequestError,
    UpstreamTimeoutError,
)

logger = logging.getLogger("uvicorn.error")

DIAGNOSTIC_BODY_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    timeout_seconds: float = 30.0

    def backoff_seconds(self, attempt_index: int) -> float:
        return max(
            0.0, self.base_delay_seconds * (self.backoff_multiplier**attempt_index)
        )


@dataclass(slots=True)
class UpstreamRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None


@dataclass(slots=True)
class BufferedResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(slots=True)
class Ok:
    response: BufferedResponse | httpx.Response


@dataclass(slots=True)
class Retryable:
    reason: str
    status_code: int | None = None
    body_excerpt: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    error: Exception | None = None


@dataclass(slots=True)
class Fatal:
    reason: str
    error: Exception


AttemptOutcome = Ok | Retryable | Fatal


def classify_transient(status_code: int, content_type: str) -> str | None:
    """Return the retry reason for a transient upstream reply, or None."""
    if "text/html" in content_type.lower():
        return "html_error_page"
    if status_code == 500:
        return "status_500"
    return None


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        details["request_url"] = None
    return details


class ResilientFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.policy = policy
        self._sleep = sleep

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch(self, request: UpstreamRequest) -> BufferedResponse:
        response = await self._run(request, stream=False)
        return cast(BufferedResponse, response)

    async def open_stream(self, request: UpstreamRequest) -> httpx.Response:
        """Like fetch, but a non-transient reply comes back with its body unread.

        The caller owns the returned response and must close it.
        """
        response = await self._run(request, stream=True)
        return cast(httpx.Response, response)

    async def _run(
        self, request: UpstreamRequest, *, stream: bool
    ) -> BufferedResponse | httpx.Response:
        policy = self.policy
        total_attempts = max(1, policy.max_attempts)
        deadline = policy.timeout_seconds if policy.timeout_seconds > 0 else None
        started = time.perf_counter()
        last: Retryable | None = None
        attempts_made = 0
        try:
            async with asyncio.timeout(deadline):
                for attempt_index in range(total_attempts):
                    attempts_made = attempt_index + 1
                    outcome = await self._attempt(request, stream=stream)
                    if isinstance(outcome, Ok):
                        return outcome.response
                    if isinstance(outcome, Fatal):
                        logger.warning(
                            "upstream_fatal url=%s attempt=%d/%d reason=%s",
                            request.url,
                            attempts_made,
                            total_attempts,
                            outcome.reason,
                        )
                        raise UpstreamRequestError(
                            outcome.reason, str(outcome.error).strip()
                        ) from outcome.error
                    last = outcome
                    if attempts_made >= total_attempts:
                        break
                    delay = policy.backoff_seconds(attempt_index)
                    logger.info(
                        "upstream_retry url=%s attempt=%d/%d reason=%s status=%s delay_s=%.3f",
                        request.url,
                        attempts_made,
                        total_attempts,
                        outcome.reason,
                        outcome.status_code,
                        delay,
                    )
                    await self._sleep(delay)
        except TimeoutError as exc:
            logger.warning(
                "upstream_deadline_exceeded url=%s attempts=%d elapsed_ms=%.2f",
                request.url,
                attempts_made,
                (time.perf_counter() - started) * 1000.0,
            )
            raise UpstreamTimeoutError(
                f"Upstream request timed out after {policy.timeout_seconds:g}s"
            ) from exc

        assert last is not None
        logger.warning(
            "upstream_retries_exhausted url=%s attempts=%d reason=%s status=%s body=%r",
            request.url,
            attempts_made,
            last.reason,
            last.status_code,
            last.body_excerpt[:200],
        )
        raise RetryExhaustedError(
            attempts=attempts_made,
            reason=last.reason,
            last_status=last.status_code,
            body_excerpt=last.body_excerpt,
            response_headers=last.headers,
        ) from last.error

    async def _attempt(self, request: UpstreamRequest, *, stream: bool) -> AttemptOutcome:
        try:
            upstream = await self.client.send(
                self.client.build_request(
                    method=request.method,
                    url=request.url,
                    headers=request.headers,
                    json=request.json_body,
                ),
                stream=True,
            )
        except httpx.TransportError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_request_error url=%s error_type=%s is_timeout=%s error=%s",
                request.url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            return Retryable(reason=details["error_type"], error=exc)
        except httpx.RequestError as exc:
            return Fatal(reason=exc.__class__.__name__, error=exc)

        content_type = upstream.headers.get("content-type", "")
        transient = classify_transient(upstream.status_code, content_type)
        if stream and transient is None:
            return Ok(upstream)

        try:
            body = await upstream.aread()
        except httpx.RequestError as exc:
            return Retryable(
                reason=exc.__class__.__name__,
                status_code=upstream.status_code,
                error=exc,
            )
        finally:
            await upstream.aclose()

        headers = dict(upstream.headers.items())
        if transient is not None:
            return Retryable(
                reason=transient,
                status_code=upstream.status_code,
                body_excerpt=body.decode("utf-8", errors="replace")[
                    :DIAGNOSTIC_BODY_LIMIT
                ],
                headers=headers,
            )
        return Ok(
            BufferedResponse(
                status_code=upstream.status_code,
                headers=headers,
                body=body,
            )
        )
