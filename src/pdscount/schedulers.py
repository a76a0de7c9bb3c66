"""Background coroutines: known-host refresh and cache cleanup."""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import structlog

from pdscount.models.pds import CountSource

if TYPE_CHECKING:
    from pdscount.models.pds import PDSInfo
    from pdscount.state import AppState

log = structlog.get_logger()


def _jittered_delay(base_seconds: float) -> float:
    return base_seconds * random.uniform(0.8, 1.2)


async def refresh_known_hosts(state: AppState) -> list[PDSInfo]:
    """Recompute every known host and overwrite its cache entry.

    Bypasses the cache read. A host that fails is logged and skipped; the
    rest are still refreshed.
    """
    hosts = state.settings.refresher.known_hosts
    log.info("refresh_started", hosts=len(hosts))

    refreshed: list[PDSInfo] = []
    for host in hosts:
        try:
            info = await state.memoizer.compute(host, CountSource.CRON)
        except Exception:
            log.warning("refresh_host_failed", host=host, exc_info=True)
            continue
        await state.memoizer.store(info)
        refreshed.append(info)
        log.info("refresh_host_complete", host=info.host, accounts=info.accounts)

    log.info("refresh_complete", refreshed=len(refreshed), hosts=len(hosts))
    return refreshed


async def run_refresh_scheduler(state: AppState) -> None:
    """Refresh known hosts at startup and then on the configured interval."""
    interval_seconds = state.settings.refresher.interval_hours * 3600
    while True:
        try:
            await refresh_known_hosts(state)
        except Exception:
            log.warning("refresh_scheduler_error", exc_info=True)
        await asyncio.sleep(_jittered_delay(interval_seconds))


async def run_cache_cleanup_scheduler(state: AppState) -> None:
    """Run cache cleanup at startup and on the configured interval."""
    interval_hours = state.settings.cache.cleanup_interval_hours

    # Skips itself if a cleanup ran recently
    await state.cache.cleanup_if_due(interval_hours)

    while True:
        await asyncio.sleep(interval_hours * 3600)
        await state.cache.cleanup_if_due(interval_hours)
