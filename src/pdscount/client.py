"""XRPC listing client for PDS hosts and relays.

All network I/O for counting goes through a single XrpcClient shared across
requests. The client receives an httpx.AsyncClient via constructor injection;
the lifespan owns the client lifecycle.
"""

from __future__ import annotations

import asyncio
import ipaddress
import re
import socket
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from pdscount.errors import ErrorCode, PdsCountError
from pdscount.models.listing import HostPage, RepoPage, Session

if TYPE_CHECKING:
    from pdscount.config import AuthSettings, ClientSettings

log = structlog.get_logger()

_PageT = TypeVar("_PageT", bound=BaseModel)

LIST_REPOS = "com.atproto.sync.listRepos"
LIST_HOSTS = "com.atproto.sync.listHosts"
CREATE_SESSION = "com.atproto.server.createSession"

PRIVATE_NETWORKS: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
]

_HOSTNAME_RE = re.compile(
    r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*(:\d{1,5})?$"
)

# Final label of a numeric IPv4 spelling; no real TLD looks like this
_NUMERIC_LABEL_RE = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$")


def build_http_client(settings: ClientSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
        ),
    )


def canonical_host(host: str) -> str:
    """Reduce ``'https://PDS.example.com/'`` to ``'pds.example.com'``."""
    value = host.strip()
    if "://" in value:
        value = urlparse(value).netloc
    return value.split("/", 1)[0].rstrip(".").lower()


def service_url(host: str) -> str:
    """Return the origin to call for a host, defaulting the scheme to https."""
    value = host.strip().rstrip("/")
    if value.startswith(("http://", "https://")):
        return value
    return f"https://{value}"


def _strip_port(hostname: str) -> str:
    return hostname.rsplit(":", 1)[0] if hostname.count(":") == 1 else hostname


def _numeric_ipv4(name: str) -> ipaddress.IPv4Address | None:
    """Decode shorthand IPv4 spellings the resolver accepts, e.g. ``127.1`` or ``0x7f000001``."""
    if not _NUMERIC_LABEL_RE.match(name.rsplit(".", 1)[-1]):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(name))
    except OSError:
        return None


def is_private_host(hostname: str) -> bool:
    """True for localhost and IP literals inside private or loopback ranges."""
    name = _strip_port(hostname)
    if name == "localhost" or name.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(name)
    except ValueError:
        addr = _numeric_ipv4(name)
        if addr is None:
            return False  # a domain name, not an IP
    return any(addr in net for net in PRIVATE_NETWORKS)


def validate_host(host: str, *, block_private: bool = True) -> str:
    """Canonicalise a user-supplied host or raise ``INVALID_INPUT``."""
    hostname = canonical_host(host)
    if not hostname or not _HOSTNAME_RE.match(hostname):
        raise PdsCountError(
            code=ErrorCode.INVALID_INPUT,
            message=f"Invalid PDS host: {host!r}",
            suggestion="Pass a bare hostname such as 'pds.example.com'.",
        )
    if block_private and is_private_host(hostname):
        log.warning("private_host_blocked", host=hostname)
        raise PdsCountError(
            code=ErrorCode.INVALID_INPUT,
            message=f"Host not allowed: {hostname}",
            suggestion="Private and loopback addresses cannot be counted.",
        )
    name = _strip_port(hostname)
    if _NUMERIC_LABEL_RE.match(name.rsplit(".", 1)[-1]):
        try:
            ipaddress.IPv4Address(name)
        except ValueError:
            raise PdsCountError(
                code=ErrorCode.INVALID_INPUT,
                message=f"Invalid PDS host: {host!r}",
                suggestion="Write IP addresses in dotted-quad form, e.g. '203.0.113.7'.",
            ) from None
    return hostname


class XrpcClient:
    """Thin XRPC client exposing the two paged sync listings and login."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def list_repos(
        self,
        service: str,
        *,
        cursor: str | None = None,
        limit: int = 1000,
        session: Session | None = None,
    ) -> RepoPage:
        data = await self._get(service, LIST_REPOS, _page_params(cursor, limit), session)
        return _parse(RepoPage, data, service, LIST_REPOS)

    async def list_hosts(
        self,
        service: str,
        *,
        cursor: str | None = None,
        limit: int = 1000,
        session: Session | None = None,
    ) -> HostPage:
        data = await self._get(service, LIST_HOSTS, _page_params(cursor, limit), session)
        return _parse(HostPage, data, service, LIST_HOSTS)

    async def create_session(self, service: str, identifier: str, password: str) -> Session:
        """Log in with an identifier and app password. Raises ``LOGIN_FAILED``."""
        url = f"{service}/xrpc/{CREATE_SESSION}"
        try:
            response = await self._client.post(
                url, json={"identifier": identifier, "password": password}
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PdsCountError(
                code=ErrorCode.LOGIN_FAILED,
                message=f"Network error logging in to {service}: {exc}",
                suggestion="The relay may be temporarily unavailable.",
                recoverable=not isinstance(exc, httpx.InvalidURL),
            ) from exc

        if not response.is_success:
            raise PdsCountError(
                code=ErrorCode.LOGIN_FAILED,
                message=f"HTTP {response.status_code} logging in to {service}",
                suggestion="Check PDSCOUNT__AUTH__USERNAME and PDSCOUNT__AUTH__PASSWORD.",
                recoverable=response.status_code >= 500,
            )

        try:
            session = Session.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise PdsCountError(
                code=ErrorCode.LOGIN_FAILED,
                message=f"Malformed session response from {service}",
                recoverable=False,
            ) from exc

        log.info("session_created", service=service, did=session.did)
        return session

    async def _get(
        self,
        service: str,
        nsid: str,
        params: dict[str, Any],
        session: Session | None,
    ) -> Any:
        url = f"{service}/xrpc/{nsid}"
        headers = {"Authorization": f"Bearer {session.access_jwt}"} if session else None

        try:
            response = await self._client.get(url, params=params, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PdsCountError(
                code=ErrorCode.LISTING_FETCH_FAILED,
                message=f"Network error calling {nsid} on {service}: {exc}",
                suggestion="The host may be slow or temporarily unavailable.",
                recoverable=not isinstance(exc, httpx.InvalidURL),
            ) from exc

        if response.status_code == 429:
            raise PdsCountError(
                code=ErrorCode.RATE_LIMITED,
                message=f"Rate limited calling {nsid} on {service}",
                suggestion="Retry after the rate-limit window resets.",
                recoverable=True,
            )

        if not response.is_success:
            raise PdsCountError(
                code=ErrorCode.LISTING_FETCH_FAILED,
                message=f"HTTP {response.status_code} calling {nsid} on {service}",
                suggestion="The host may not expose the sync listing.",
                recoverable=response.status_code >= 500,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise PdsCountError(
                code=ErrorCode.LISTING_FETCH_FAILED,
                message=f"Non-JSON response calling {nsid} on {service}",
                recoverable=False,
            ) from exc

        log.debug("xrpc_complete", nsid=nsid, service=service, status_code=response.status_code)
        return data


class SessionProvider:
    """Logs in to the relay once and hands the same session to every caller.

    Returns ``None`` when no credentials are configured, in which case the
    listing is made anonymously. A failed login is not remembered, so the
    next call tries again.
    """

    def __init__(self, client: XrpcClient, service: str, auth: AuthSettings) -> None:
        self._client = client
        self._service = service
        self._auth = auth
        self._session: Session | None = None
        self._lock = asyncio.Lock()

    async def get_session(self) -> Session | None:
        username = self._auth.username
        password = self._auth.password
        if not username or password is None:
            return None
        async with self._lock:
            if self._session is None:
                self._session = await self._client.create_session(
                    self._service, username, password.get_secret_value()
                )
            return self._session


def _page_params(cursor: str | None, limit: int) -> dict[str, Any]:
    params: dict[str, Any] = {"limit": limit}
    if cursor:
        params["cursor"] = cursor
    return params


def _parse(model: type[_PageT], data: Any, service: str, nsid: str) -> _PageT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise PdsCountError(
            code=ErrorCode.LISTING_FETCH_FAILED,
            message=f"Malformed {nsid} response from {service}",
            recoverable=False,
        ) from exc
