from __future__ import annotations

import logging
from functools import partial
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from delta_proxy.errors import (
    InvalidRequestError,
    MethodNotAllowedError,
    ProxyError,
    RateLimitError,
    UpstreamStatusError,
)
from delta_proxy.gateway.admission import (
    AdmissionConfig,
    AdmissionController,
    AdmissionTicket,
)
from delta_proxy.gateway.auth import require_bearer
from delta_proxy.gateway.compression import compress_response
from delta_proxy.gateway.fetcher import (
    DIAGNOSTIC_BODY_LIMIT,
    ResilientFetcher,
    RetryPolicy,
    UpstreamRequest,
)
from delta_proxy.runtime.models_cache import ModelsCache
from delta_proxy.settings import Settings, get_settings
from delta_proxy.streaming.supervisor import StreamSessionSupervisor

app = FastAPI(
    title="Delta Proxy",
    description=(
        "OpenAI-compatible proxy that turns cumulative upstream stream deltas "
        "into incremental ones."
    ),
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def build_upstream_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Keep only the fields upstream accepts; everything else the client sent is dropped."""
    upstream_payload: dict[str, Any] = {
        "model": payload.get("model"),
        "stream": bool(payload.get("stream", False)),
    }
    if "messages" in payload:
        upstream_payload["messages"] = payload["messages"]
    if "max_tokens" in payload:
        upstream_payload["max_tokens"] = payload["max_tokens"]
    return upstream_payload


def _build_fetcher(settings: Settings) -> ResilientFetcher:
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_read_timeout_seconds),
            write=max(0.1, settings.upstream_write_timeout_seconds),
            pool=max(0.1, settings.upstream_pool_timeout_seconds),
        ),
        limits=httpx.Limits(
            max_connections=max(1, settings.max_concurrent_requests),
            max_keepalive_connections=max(1, settings.max_concurrent_requests // 4),
        ),
    )
    return ResilientFetcher(
        client,
        RetryPolicy(
            max_attempts=max(1, settings.retry_max_attempts),
            base_delay_seconds=settings.retry_base_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    fetcher = _build_fetcher(settings)
    app.state.settings = settings
    app.state.fetcher = fetcher
    app.state.admission = AdmissionController(
        AdmissionConfig(
            max_concurrent_requests=settings.max_concurrent_requests,
            retry_after_seconds=settings.rate_limit_retry_after_seconds,
        )
    )
    app.state.models_cache = ModelsCache(
        fetcher=fetcher,
        models_url=settings.upstream_models_url,
        ttl_seconds=settings.models_cache_ttl_seconds,
    )
    logger.info(
        (
            "startup complete upstream_chat_url=%s max_concurrent_requests=%d "
            "retry_max_attempts=%d upstream_timeout_s=%.1f stream_idle_timeout_s=%.1f"
        ),
        settings.upstream_chat_url,
        settings.max_concurrent_requests,
        settings.retry_max_attempts,
        settings.upstream_timeout_seconds,
        settings.stream_idle_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    fetcher: ResilientFetcher | None = getattr(app.state, "fetcher", None)
    if fetcher is not None:
        await fetcher.close()
    logger.info("shutdown complete")


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    logger.info(
        "proxy_error method=%s path=%s status=%d error_type=%s message=%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.error_type.value,
        exc.message,
    )
    return exc.to_response()


async def _run_admitted(
    request: Request,
    handler: Callable[[AdmissionTicket], Awaitable[Response]],
) -> Response:
    admission: AdmissionController = app.state.admission
    ticket = admission.try_admit()
    if ticket is None:
        logger.warning(
            "admission_rejected path=%s in_flight=%d",
            request.url.path,
            admission.in_flight,
        )
        raise RateLimitError(admission.retry_after_seconds)

    handed_off = False
    try:
        response = await handler(ticket)
        # A streaming session releases the ticket itself when it closes.
        handed_off = isinstance(response, StreamingResponse)
        return response
    except ProxyError:
        raise
    except Exception as exc:
        logger.exception(
            "proxy_unhandled_error method=%s path=%s", request.method, request.url.path
        )
        raise ProxyError(str(exc) or exc.__class__.__name__) from exc
    finally:
        if not handed_off:
            ticket.release()


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")
    return payload


async def _list_models(request: Request, _ticket: AdmissionTicket) -> Response:
    credentials = require_bearer(request)
    settings: Settings = app.state.settings
    models_cache: ModelsCache = app.state.models_cache
    payload = await models_cache.get(credentials.authorization)
    return compress_response(
        request,
        payload,
        media_type="application/json",
        enabled=settings.response_compression_enabled,
        min_bytes=settings.response_compression_min_bytes,
    )


async def _proxy_chat_request(request: Request, ticket: AdmissionTicket) -> Response:
    credentials = require_bearer(request)
    payload = await _read_json_object(request)
    if not payload.get("model"):
        raise InvalidRequestError("Model parameter is required")

    settings: Settings = app.state.settings
    fetcher: ResilientFetcher = app.state.fetcher
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    upstream_payload = build_upstream_payload(payload)
    is_stream = upstream_payload["stream"]
    upstream_request = UpstreamRequest(
        method="POST",
        url=settings.upstream_chat_url,
        headers={
            "Authorization": credentials.authorization,
            "Content-Type": "application/json",
        },
        json_body=upstream_payload,
    )
    messages = upstream_payload.get("messages")
    logger.info(
        "proxy_request request_id=%s path=%s model=%s stream=%s messages=%s",
        request_id,
        request.url.path,
        upstream_payload["model"],
        is_stream,
        len(messages) if isinstance(messages, list) else "-",
    )

    if is_stream:
        return await _open_stream_response(
            upstream_request,
            ticket=ticket,
            request_id=request_id,
            settings=settings,
            fetcher=fetcher,
        )

    response = await fetcher.fetch(upstream_request)
    if not response.is_success:
        raise UpstreamStatusError(
            response.status_code, response.text[:DIAGNOSTIC_BODY_LIMIT]
        )
    logger.info(
        "proxy_response request_id=%s status=%d bytes=%d",
        request_id,
        response.status_code,
        len(response.body),
    )
    return compress_response(
        request,
        response.body,
        status_code=response.status_code,
        media_type="application/json",
        enabled=settings.response_compression_enabled,
        min_bytes=settings.response_compression_min_bytes,
    )


async def _open_stream_response(
    upstream_request: UpstreamRequest,
    *,
    ticket: AdmissionTicket,
    request_id: str,
    settings: Settings,
    fetcher: ResilientFetcher,
) -> StreamingResponse:
    upstream = await fetcher.open_stream(upstream_request)
    if not upstream.is_success:
        try:
            body = await upstream.aread()
        finally:
            await upstream.aclose()
        raise UpstreamStatusError(
            upstream.status_code,
            body.decode("utf-8", errors="replace")[:DIAGNOSTIC_BODY_LIMIT],
        )

    supervisor = StreamSessionSupervisor(
        upstream,
        idle_timeout_seconds=settings.stream_idle_timeout_seconds,
        max_buffer_bytes=settings.stream_max_buffer_bytes,
        on_close=ticket.release,
        request_id=request_id,
    )
    logger.info(
        "proxy_stream_open request_id=%s status=%d", request_id, upstream.status_code
    )
    return StreamingResponse(
        content=supervisor.run(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(supervisor.close, "client_gone"),
    )


async def _reject_method(request: Request, _ticket: AdmissionTicket) -> Response:
    raise MethodNotAllowedError()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models(request: Request) -> Response:
    return await _run_admitted(request, partial(_list_models, request))


@app.post("/{path:path}")
async def chat_completions(path: str, request: Request) -> Response:
    return await _run_admitted(request, partial(_proxy_chat_request, request))


@app.api_route(
    "/{path:path}",
    methods=["GET", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
)
async def method_not_allowed(path: str, request: Request) -> Response:
    return await _run_admitted(request, partial(_reject_method, request))


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("delta_proxy.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
