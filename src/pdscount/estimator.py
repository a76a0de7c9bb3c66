"""Account-count estimation for a single PDS and for the umbrella fleet.

A single host is counted by walking its ``listRepos`` pages up to a fixed page
cap. Only the first page is load-bearing: if it fails the estimate fails with
``UPSTREAM_UNAVAILABLE``; a later failure truncates the walk and the running
total is returned.

The umbrella host is counted by enumerating its fleet from a relay's
``listHosts`` directory and summing the members' counts with a bounded pool of
workers draining a shared queue. A member that cannot be counted contributes
zero.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from pdscount.client import canonical_host, service_url, validate_host
from pdscount.errors import ErrorCode, PdsCountError
from pdscount.models.listing import HostRecord

if TYPE_CHECKING:
    from pdscount.config import EstimatorSettings
    from pdscount.models.listing import Session
    from pdscount.protocols import ListingClientProtocol, SessionProviderProtocol

log = structlog.get_logger()


@dataclass(frozen=True)
class RepoWalk:
    """Outcome of walking one host's repository listing."""

    host: str
    total: int
    pages: int
    complete: bool  # the listing reported end of stream
    all_pages_full: bool
    truncated: bool = False  # a page after the first failed

    @property
    def lower_bound(self) -> bool:
        """True when the walk stopped early with every sampled page full."""
        return not self.complete and self.all_pages_full and self.pages > 0


class CountEstimator:
    """Estimates the number of accounts hosted by a PDS."""

    def __init__(
        self,
        client: ListingClientProtocol,
        settings: EstimatorSettings,
        sessions: SessionProviderProtocol | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._sessions = sessions

    @property
    def settings(self) -> EstimatorSettings:
        return self._settings

    def is_umbrella(self, host: str) -> bool:
        return canonical_host(host) == canonical_host(self._settings.umbrella_host)

    async def estimate(self, host: str) -> int:
        """Return the estimated account count for ``host``.

        Raises ``PdsCountError(UPSTREAM_UNAVAILABLE)`` when the first listing
        page (or the first directory page, for the umbrella host) cannot be
        fetched.
        """
        if self.is_umbrella(host):
            log.info("estimate_started", host=host, path="fleet")
            return await self.aggregate_fleet()

        log.info("estimate_started", host=host, path="single")
        walk = await self.walk_repos(host)
        return self._accounts(walk)

    # ------------------------------------------------------------------
    # Single host
    # ------------------------------------------------------------------

    async def walk_repos(self, host: str) -> RepoWalk:
        """Walk up to ``page_cap`` pages of ``listRepos`` for one host."""
        service = service_url(host)
        limit = self._settings.page_limit
        page_cap = self._settings.page_cap
        walk_log = log.bind(host=host)

        total = 0
        pages = 0
        cursor: str | None = None
        all_pages_full = True
        complete = False
        truncated = False

        while pages < page_cap:
            try:
                page = await self._client.list_repos(service, cursor=cursor, limit=limit)
            except PdsCountError as exc:
                if pages == 0:
                    raise PdsCountError(
                        code=ErrorCode.UPSTREAM_UNAVAILABLE,
                        message=f"Failed to fetch repos from {host}: {exc.message}",
                        suggestion="Check that the host is a reachable PDS.",
                        recoverable=exc.recoverable,
                    ) from exc
                walk_log.warning(
                    "partial_page_failure",
                    pages=pages,
                    total=total,
                    code=exc.code,
                    message=exc.message,
                )
                truncated = True
                break

            count = len(page.repos)
            total += count
            pages += 1
            if count < limit:
                all_pages_full = False
            walk_log.debug("repo_page_fetched", page=pages, count=count, total=total)

            if not page.cursor or count == 0:
                complete = True
                break
            cursor = page.cursor

        return RepoWalk(
            host=host,
            total=total,
            pages=pages,
            complete=complete,
            all_pages_full=all_pages_full,
            truncated=truncated,
        )

    def _accounts(self, walk: RepoWalk) -> int:
        if not walk.lower_bound:
            log.info("estimate_exact", host=walk.host, accounts=walk.total, pages=walk.pages)
            return walk.total

        if self._settings.mode == "fast" and not walk.truncated:
            accounts = walk.total * self._settings.fast_multiplier
            log.info(
                "estimate_extrapolated",
                host=walk.host,
                sampled=walk.total,
                accounts=accounts,
                pages=walk.pages,
                multiplier=self._settings.fast_multiplier,
            )
            return accounts

        log.info("estimate_lower_bound", host=walk.host, accounts=walk.total, pages=walk.pages)
        return walk.total

    # ------------------------------------------------------------------
    # Umbrella fleet
    # ------------------------------------------------------------------

    async def list_fleet(self) -> list[Any]:
        """Enumerate relay host records whose hostname ends with ``fleet_suffix``.

        Records come back unvalidated. One whose hostname is missing or not a
        string is kept so that counting it fails and is logged.
        """
        relay = service_url(self._settings.relay_url)
        suffix = self._settings.fleet_suffix
        session = await self._session()

        members: list[Any] = []
        cursor: str | None = None
        for page_number in range(self._settings.directory_max_pages):
            try:
                page = await self._client.list_hosts(
                    relay,
                    cursor=cursor,
                    limit=self._settings.directory_limit,
                    session=session,
                )
            except PdsCountError as exc:
                if page_number == 0:
                    raise PdsCountError(
                        code=ErrorCode.UPSTREAM_UNAVAILABLE,
                        message=f"Failed to fetch hosts from {relay}: {exc.message}",
                        suggestion="The relay directory may be temporarily unavailable.",
                        recoverable=exc.recoverable,
                    ) from exc
                log.warning(
                    "partial_page_failure",
                    host=relay,
                    pages=page_number,
                    members=len(members),
                    code=exc.code,
                )
                break

            for raw in page.hosts:
                hostname = _raw_hostname(raw)
                if hostname is None or hostname.endswith(suffix):
                    members.append(raw)
            if not page.cursor or not page.hosts:
                break
            cursor = page.cursor

        log.info("fleet_listed", relay=relay, members=len(members))
        return members

    async def aggregate_fleet(self) -> int:
        """Sum the member counts of the umbrella fleet."""
        members = await self.list_fleet()
        if not members:
            return 0

        queue: asyncio.Queue[Any] = asyncio.Queue()
        for member in members:
            queue.put_nowait(member)

        async def worker() -> int:
            subtotal = 0
            while True:
                try:
                    raw = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return subtotal
                try:
                    count = await self._member_count(raw)
                except PdsCountError as exc:
                    log.warning(
                        "fleet_member_failed",
                        member=_raw_hostname(raw),
                        code=exc.code,
                        message=exc.message,
                    )
                    continue
                subtotal += count
                log.debug("fleet_member_counted", member=_raw_hostname(raw), accounts=count)

        width = min(self._settings.fleet_concurrency, len(members))
        subtotals = await asyncio.gather(*(worker() for _ in range(width)))
        accounts = sum(subtotals)
        log.info("fleet_aggregated", members=len(members), workers=width, accounts=accounts)
        return accounts

    async def _member_count(self, raw: Any) -> int:
        try:
            member = HostRecord.model_validate(raw)
        except ValidationError as exc:
            raise PdsCountError(
                code=ErrorCode.MEMBER_FETCH_FAILED,
                message=f"Malformed host record: {exc.error_count()} validation error(s)",
            ) from exc

        if self._settings.fleet_member_source == "listing":
            # Relay-supplied names get the same checks as user input
            host = validate_host(member.hostname)
            return self._accounts(await self.walk_repos(host))

        if member.account_count is None:
            return 0
        if member.account_count < 0:
            raise PdsCountError(
                code=ErrorCode.MEMBER_FETCH_FAILED,
                message=f"Negative account count {member.account_count} for {member.hostname}",
            )
        return member.account_count

    async def _session(self) -> Session | None:
        if self._sessions is None:
            return None
        try:
            return await self._sessions.get_session()
        except PdsCountError as exc:
            raise PdsCountError(
                code=ErrorCode.UPSTREAM_UNAVAILABLE,
                message=f"Login to the relay failed: {exc.message}",
                suggestion=exc.suggestion,
                recoverable=exc.recoverable,
            ) from exc


def _raw_hostname(raw: Any) -> str | None:
    if isinstance(raw, dict) and isinstance(raw.get("hostname"), str):
        return raw["hostname"]
    return None
