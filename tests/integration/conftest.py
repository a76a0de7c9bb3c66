"""Integration test fixtures.

Provides a fully wired AppState over in-memory SQLite and a real
httpx.AsyncClient whose upstream requests are intercepted with respx, plus an
ASGI client bound to the Starlette app built from that state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest

from pdscount.cache import Cache
from pdscount.client import XrpcClient
from pdscount.config import Settings
from pdscount.estimator import CountEstimator
from pdscount.memoizer import CountMemoizer
from pdscount.server import create_app
from pdscount.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

RELAY = "https://relay.example.net"


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        estimator={"relay_url": RELAY, "fleet_concurrency": 3},
        cache={"key_prefix": "it:", "ttl_seconds": 600, "dynamic_ttl_seconds": 120},
        refresher={"known_hosts": ["pds.example.com", "bsky.social"]},
    )


@pytest.fixture()
async def app_state(settings: Settings) -> AsyncGenerator[AppState, None]:
    """Full AppState with in-memory SQLite. No background tasks are started."""
    async with (
        aiosqlite.connect(":memory:") as db,
        httpx.AsyncClient() as http_client,
    ):
        cache = Cache(db)
        await cache.init_db()
        estimator = CountEstimator(XrpcClient(http_client), settings.estimator)
        memoizer = CountMemoizer(estimator, cache, settings.cache)
        yield AppState(
            settings=settings,
            cache=cache,
            estimator=estimator,
            memoizer=memoizer,
            http_client=http_client,
        )


@pytest.fixture()
async def api(app_state: AppState) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client talking to the app in-process."""
    app = create_app(state=app_state)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        yield client
