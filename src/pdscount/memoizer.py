"""Read-through / write-through cache in front of the estimator.

Entries are stored as ``PDSInfo`` JSON under ``key_prefix + host``. A hit is
returned unchanged; freshness is left to the store's TTL.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from pdscount.client import canonical_host
from pdscount.models.pds import CountSource, PDSInfo

if TYPE_CHECKING:
    from pdscount.config import CacheSettings
    from pdscount.protocols import CacheProtocol, EstimatorProtocol


class CountMemoizer:
    def __init__(
        self,
        estimator: EstimatorProtocol,
        cache: CacheProtocol,
        settings: CacheSettings,
    ) -> None:
        self._estimator = estimator
        self._cache = cache
        self._settings = settings

    def cache_key(self, host: str) -> str:
        return f"{self._settings.key_prefix}{canonical_host(host)}"

    async def get_or_compute(self, host: str) -> PDSInfo:
        """Return the cached count for ``host``, computing and storing it on a miss."""
        host = canonical_host(host)
        log = structlog.get_logger().bind(host=host)

        cached = await self.lookup(host)
        if cached is not None:
            log.info("cache_hit", source=cached.source, updated_at=cached.updated_at.isoformat())
            return cached

        log.info("cache_miss_computing")
        info = await self.compute(host, CountSource.DYNAMIC)
        # Store failures are logged inside the cache; the fresh count is still returned
        await self.store(info)
        return info

    async def lookup(self, host: str) -> PDSInfo | None:
        """Read and parse a cached entry. Unparseable entries are dropped."""
        key = self.cache_key(host)
        raw = await self._cache.get(key)
        if raw is None:
            return None
        try:
            return PDSInfo.model_validate_json(raw)
        except ValidationError:
            structlog.get_logger().warning("cache_entry_invalid", key=key, exc_info=True)
            await self._cache.delete(key)
            return None

    async def compute(self, host: str, source: CountSource) -> PDSInfo:
        """Run the estimator and wrap the result. Does not touch the cache."""
        host = canonical_host(host)
        accounts = await self._estimator.estimate(host)
        return PDSInfo(
            host=host,
            accounts=accounts,
            updated_at=datetime.now(UTC),
            source=source,
        )

    async def store(self, info: PDSInfo) -> None:
        """Overwrite the entry for ``info.host`` with a fresh TTL."""
        await self._cache.set(
            self.cache_key(info.host),
            info.model_dump_json(),
            self._settings.ttl_seconds,
        )

    async def invalidate(self, host: str) -> None:
        await self._cache.delete(self.cache_key(host))
