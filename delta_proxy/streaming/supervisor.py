from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Protocol

from delta_proxy.errors import StreamTimeoutError, stream_error_record
from delta_proxy.streaming.framer import (
    DEFAULT_MAX_BUFFER_BYTES,
    StreamFramer,
    record_body,
)
from delta_proxy.streaming.normalizer import normalize_record
from delta_proxy.streaming.session import SessionState, StreamSession

logger = logging.getLogger("uvicorn.error")

DONE_RECORD = b"data: [DONE]\n\n"


class UpstreamBody(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class StreamSessionSupervisor:
    """Owns one streaming response from upstream read to downstream close.

    Every exit path (upstream end-of-stream, idle timeout, any other error)
    writes exactly one ``data: [DONE]`` record, then closes the upstream body
    and runs ``on_close`` exactly once.
    """

    def __init__(
        self,
        upstream: UpstreamBody,
        *,
        idle_timeout_seconds: float = 30.0,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        on_close: Callable[[], None] | None = None,
        request_id: str = "-",
    ) -> None:
        self._upstream = upstream
        self._idle_timeout_seconds = max(0.001, float(idle_timeout_seconds))
        self._on_close = on_close
        self._request_id = request_id
        self.session = StreamSession(framer=StreamFramer(max_buffer_bytes))

    async def run(self) -> AsyncIterator[bytes]:
        outcome = "disconnected"
        try:
            failure: Exception | None = None
            try:
                async for record in self._iter_records():
                    if record_body(record).strip() == "[DONE]":
                        continue
                    self.session.records_forwarded += 1
                    yield normalize_record(record, self.session).encode("utf-8")
                outcome = "completed"
            except StreamTimeoutError as exc:
                failure = exc
                outcome = "timeout"
                logger.warning(
                    "stream_idle_timeout request_id=%s idle_timeout_s=%.3f records=%d",
                    self._request_id,
                    self._idle_timeout_seconds,
                    self.session.records_forwarded,
                )
            except Exception as exc:
                failure = exc
                outcome = "error"
                logger.warning(
                    "stream_error request_id=%s error_type=%s error=%s records=%d",
                    self._request_id,
                    exc.__class__.__name__,
                    exc,
                    self.session.records_forwarded,
                )
            if failure is not None:
                yield stream_error_record(failure)
            yield DONE_RECORD
        finally:
            await self.close(outcome)

    async def close(self, outcome: str = "closed") -> None:
        if self.session.state == SessionState.CLOSED:
            return
        self.session.state = SessionState.CLOSED
        try:
            await self._upstream.aclose()
        except Exception as exc:
            logger.debug(
                "stream_upstream_close_failed request_id=%s error=%s",
                self._request_id,
                exc,
            )
        finally:
            if self._on_close is not None:
                self._on_close()
        logger.info(
            "stream_closed request_id=%s outcome=%s records=%d",
            self._request_id,
            outcome,
            self.session.records_forwarded,
        )

    async def _iter_records(self) -> AsyncIterator[str]:
        session = self.session
        chunks = self._upstream.aiter_bytes()
        session.touch()
        while True:
            remaining = self._idle_timeout_seconds - session.idle_seconds()
            if remaining <= 0:
                raise self._timeout_error()
            try:
                async with asyncio.timeout(remaining):
                    chunk = await anext(chunks)
            except StopAsyncIteration:
                break
            except TimeoutError as exc:
                raise self._timeout_error() from exc
            session.touch()
            for record in session.framer.feed(chunk):
                yield record
        for record in session.framer.flush():
            yield record

    def _timeout_error(self) -> StreamTimeoutError:
        return StreamTimeoutError(
            "Stream processing timeout: no upstream data for "
            f"{self._idle_timeout_seconds:g}s"
        )
