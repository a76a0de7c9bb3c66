"""Shared test fixtures for the pdscount test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import pytest

from pdscount.cache import Cache
from pdscount.config import CacheSettings, EstimatorSettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@pytest.fixture()
async def cache() -> AsyncGenerator[Cache, None]:
    """Cache over an in-memory SQLite database."""
    async with aiosqlite.connect(":memory:") as db:
        cache = Cache(db)
        await cache.init_db()
        yield cache


@pytest.fixture()
def estimator_settings() -> EstimatorSettings:
    """Defaults, except a small fan-out so worker interleaving stays readable."""
    return EstimatorSettings(fleet_concurrency=4)


@pytest.fixture()
def cache_settings() -> CacheSettings:
    return CacheSettings(key_prefix="test:", ttl_seconds=600, dynamic_ttl_seconds=60)
