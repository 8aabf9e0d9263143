from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from delta_proxy.errors import UpstreamStatusError
from delta_proxy.gateway.fetcher import (
    DIAGNOSTIC_BODY_LIMIT,
    ResilientFetcher,
    UpstreamRequest,
)

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ModelsCacheEntry:
    payload: bytes
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.fetched_at < ttl_seconds


class ModelsCache:
    """Process-wide cache of the upstream model list.

    One entry shared by every caller; the first caller to find it expired
    refreshes it while the others wait on the same lock.
    """

    def __init__(
        self,
        *,
        fetcher: ResilientFetcher,
        models_url: str,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self._models_url = models_url
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entry: ModelsCacheEntry | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def entry(self) -> ModelsCacheEntry | None:
        return self._entry

    def invalidate(self) -> None:
        self._entry = None

    async def get(self, authorization: str) -> bytes:
        cached = self._fresh_entry()
        if cached is not None:
            return cached.payload

        async with self._refresh_lock:
            cached = self._fresh_entry()
            if cached is not None:
                return cached.payload

            response = await self._fetcher.fetch(
                UpstreamRequest(
                    method="GET",
                    url=self._models_url,
                    headers={"Authorization": authorization},
                )
            )
            if not response.is_success:
                raise UpstreamStatusError(
                    response.status_code, response.text[:DIAGNOSTIC_BODY_LIMIT]
                )
            self._entry = ModelsCacheEntry(
                payload=response.body, fetched_at=self._clock()
            )
            logger.info(
                "models_cache_refreshed bytes=%d ttl_s=%.0f",
                len(response.body),
                self._ttl_seconds,
            )
            return response.body

    def _fresh_entry(self) -> ModelsCacheEntry | None:
        entry = self._entry
        if entry is None or not entry.is_fresh(self._clock(), self._ttl_seconds):
            return None
        return entry
