"""Protocol interfaces for swappable components.

The estimator, memoizer and HTTP handlers reference these protocols, not the
concrete implementations. This allows:
- Tests to use AsyncMock or in-memory implementations
- Other cache backends (e.g. Redis) to be swapped in without touching callers
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pdscount.models.listing import HostPage, RepoPage, Session


class CacheProtocol(Protocol):
    """TTL key-value store. Implementations never raise on infrastructure errors."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def cleanup_if_due(self, interval_hours: int) -> None: ...

    async def cleanup_expired(self) -> None: ...


class ListingClientProtocol(Protocol):
    """Paged com.atproto.sync listings against an arbitrary service origin."""

    async def list_repos(
        self,
        service: str,
        *,
        cursor: str | None = None,
        limit: int = 1000,
        session: Session | None = None,
    ) -> RepoPage: ...

    async def list_hosts(
        self,
        service: str,
        *,
        cursor: str | None = None,
        limit: int = 1000,
        session: Session | None = None,
    ) -> HostPage: ...


class SessionProviderProtocol(Protocol):
    """Supplies the credentialed session for the relay, or None for anonymous access."""

    async def get_session(self) -> Session | None: ...


class EstimatorProtocol(Protocol):
    async def estimate(self, host: str) -> int: ...
