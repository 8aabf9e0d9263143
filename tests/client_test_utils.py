from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

from delta_proxy.gateway.fetcher import ResilientFetcher
from delta_proxy.main import app
from delta_proxy.settings import get_settings

TEST_CHAT_URL = "http://upstream.test/api/chat/completions"
TEST_MODELS_URL = "http://upstream.test/api/models"


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("UPSTREAM_CHAT_URL", TEST_CHAT_URL)
    monkeypatch.setenv("UPSTREAM_MODELS_URL", TEST_MODELS_URL)
    monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "0")


def build_test_client(monkeypatch: Any, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_upstream(handler: Callable[[httpx.Request], Any]) -> None:
    """Point the running app's fetcher at a fake upstream. Call inside `with client:`."""
    fetcher: ResilientFetcher = app.state.fetcher
    asyncio.run(fetcher.client.aclose())
    fetcher.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
