from __future__ import annotations

import gzip

from fastapi import Request
from fastapi.responses import Response

COMPRESSIBLE_MEDIA_PREFIXES = ("text/",)
COMPRESSIBLE_MEDIA_TYPES = {"application/json"}


def _accepts_gzip(accept_encoding: str) -> bool:
    for item in accept_encoding.split(","):
        coding, _, params = item.strip().partition(";")
        if coding.strip().lower() not in {"gzip", "*"}:
            continue
        quality = params.strip().lower()
        if quality.startswith("q=") and quality[2:].strip() in {"0", "0.0", "0.00"}:
            continue
        return True
    return False


def _is_compressible(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type in COMPRESSIBLE_MEDIA_TYPES or media_type.endswith("+json"):
        return True
    return media_type.startswith(COMPRESSIBLE_MEDIA_PREFIXES)


def compress_response(
    request: Request,
    body: bytes,
    *,
    status_code: int = 200,
    media_type: str = "application/json",
    headers: dict[str, str] | None = None,
    enabled: bool = True,
    min_bytes: int = 256,
) -> Response:
    response_headers = {"Cache-Control": "no-cache", **(headers or {})}
    if (
        enabled
        and len(body) >= min_bytes
        and _is_compressible(media_type)
        and _accepts_gzip(request.headers.get("accept-encoding", ""))
    ):
        body = gzip.compress(body)
        response_headers["Content-Encoding"] = "gzip"
        response_headers["Vary"] = "Accept-Encoding"
    return Response(
        content=body,
        status_code=status_code,
        headers=response_headers,
        media_type=media_type,
    )
