"""HTTP server and command-line entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Build AppState and its background tasks via the Starlette lifespan
- Map /pds requests onto the memoizer and serialise the result
- Dispatch the ``serve``, ``refresh`` and ``count`` commands
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from pdscount import __version__
from pdscount.cache import Cache
from pdscount.client import (
    SessionProvider,
    XrpcClient,
    build_http_client,
    service_url,
    validate_host,
)
from pdscount.config import Settings
from pdscount.errors import ErrorCode, PdsCountError
from pdscount.estimator import CountEstimator
from pdscount.memoizer import CountMemoizer
from pdscount.models.pds import CountSource
from pdscount.schedulers import (
    refresh_known_hosts,
    run_cache_cleanup_scheduler,
    run_refresh_scheduler,
)
from pdscount.state import AppState
from pdscount.transport import CorsMiddleware

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Sequence

    from starlette.requests import Request

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Logs go to stderr; stdout carries command output
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# State and lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_state(settings: Settings) -> AsyncGenerator[AppState, None]:
    """Create and tear down the HTTP client, cache connection and services."""
    http_client = build_http_client(settings.client)

    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))

    try:
        cache = Cache(db)
        await cache.init_db()

        xrpc = XrpcClient(http_client)
        sessions = SessionProvider(xrpc, service_url(settings.estimator.relay_url), settings.auth)
        estimator = CountEstimator(xrpc, settings.estimator, sessions)
        memoizer = CountMemoizer(estimator, cache, settings.cache)

        yield AppState(
            settings=settings,
            cache=cache,
            estimator=estimator,
            memoizer=memoizer,
            http_client=http_client,
        )
    finally:
        await http_client.aclose()
        await db.close()


def _start_background_tasks(state: AppState) -> list[asyncio.Task[None]]:
    tasks = [asyncio.create_task(run_cache_cleanup_scheduler(state))]
    if state.settings.refresher.enabled:
        tasks.append(asyncio.create_task(run_refresh_scheduler(state)))
    return tasks


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


async def pds_host(request: Request) -> JSONResponse:
    """GET /pds/<hostname>: cached or freshly computed count for one host."""
    state: AppState = request.app.state.app_state
    hostname = request.path_params["hostname"].split("/", 1)[0].strip()
    started = time.monotonic()
    log.info("pds_request_received", host=hostname)

    if not hostname:
        return JSONResponse({"error": "PDS host required"}, status_code=400)

    try:
        host = validate_host(hostname, block_private=state.settings.client.block_private_hosts)
    except PdsCountError as exc:
        log.warning("pds_request_invalid", host=hostname, message=exc.message)
        return JSONResponse({"error": "Invalid PDS host", "host": hostname}, status_code=400)

    try:
        info = await state.memoizer.get_or_compute(host)
    except PdsCountError as exc:
        log.warning(
            "pds_request_failed",
            host=hostname,
            code=exc.code,
            message=exc.message,
            recoverable=exc.recoverable,
        )
        return _fetch_failed(hostname)
    except Exception:
        log.error("pds_request_unexpected_error", host=hostname, exc_info=True)
        return _fetch_failed(hostname)

    log.info(
        "pds_request_complete",
        host=info.host,
        accounts=info.accounts,
        source=info.source,
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )
    return JSONResponse(
        info.model_dump(mode="json"),
        headers={"Cache-Control": f"public, max-age={state.settings.cache.dynamic_ttl_seconds}"},
    )


async def pds_root(request: Request) -> JSONResponse:
    """GET /pds: there is no listing, a hostname is always required."""
    return JSONResponse(
        {"error": "PDS host required, please use /pds/<hostname>", "host": None},
        status_code=500,
    )


async def healthz(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


def _fetch_failed(hostname: str) -> JSONResponse:
    return JSONResponse({"error": "Failed to fetch PDS data", "host": hostname}, status_code=500)


def create_app(settings: Settings | None = None, *, state: AppState | None = None) -> Starlette:
    """Build the Starlette app.

    With ``state`` the app serves from that prebuilt state and starts no
    background tasks; otherwise the lifespan builds everything from
    ``settings``.
    """
    if settings is None:
        settings = state.settings if state is not None else Settings()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        if state is not None:
            yield
            return

        log.info("server_starting", version=__version__)
        async with open_state(settings) as built:
            app.state.app_state = built
            tasks = _start_background_tasks(built)
            log.info(
                "server_started",
                version=__version__,
                known_hosts=len(settings.refresher.known_hosts),
                refresher_enabled=settings.refresher.enabled,
                relay_login=settings.auth.configured,
            )
            try:
                yield
            finally:
                for task in tasks:
                    task.cancel()
                for task in tasks:
                    with suppress(asyncio.CancelledError):
                        await task
                log.info("server_stopping")

    app = Starlette(
        routes=[
            Route("/healthz", healthz, methods=["GET"]),
            Route("/pds", pds_root, methods=["GET"]),
            Route("/pds/{hostname:path}", pds_host, methods=["GET"]),
        ],
        middleware=[Middleware(CorsMiddleware)],
        lifespan=lifespan,
    )
    if state is not None:
        app.state.app_state = state
    return app


def run_http_server(settings: Settings) -> None:
    """Serve the HTTP API with uvicorn."""
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )


# ---------------------------------------------------------------------------
# One-shot commands
# ---------------------------------------------------------------------------


async def _refresh_once(settings: Settings) -> list[dict]:
    async with open_state(settings) as state:
        refreshed = await refresh_known_hosts(state)
    return [info.model_dump(mode="json") for info in refreshed]


async def _count_once(settings: Settings, host: str, *, fresh: bool) -> dict:
    async with open_state(settings) as state:
        host = validate_host(host, block_private=settings.client.block_private_hosts)
        if fresh:
            info = await state.memoizer.compute(host, CountSource.DYNAMIC)
            await state.memoizer.store(info)
        else:
            info = await state.memoizer.get_or_compute(host)
    return info.model_dump(mode="json")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdscount", description="Estimate account counts for AT Protocol PDS hosts."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the HTTP API (default).")
    sub.add_parser("refresh", help="Recompute the known hosts once and exit.")

    count = sub.add_parser("count", help="Print the count for one host.")
    count.add_argument("host", help="PDS hostname, e.g. pds.example.com")
    count.add_argument(
        "--fresh", action="store_true", help="Ignore any cached entry and recompute."
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = Settings()
    _setup_logging(settings)

    if args.command in (None, "serve"):
        run_http_server(settings)
        return 0

    if args.command == "refresh":
        refreshed = asyncio.run(_refresh_once(settings))
        print(json.dumps(refreshed, indent=2))
        return 0 if len(refreshed) == len(settings.refresher.known_hosts) else 1

    try:
        info = asyncio.run(_count_once(settings, args.host, fresh=args.fresh))
    except PdsCountError as exc:
        log.error("count_failed", host=args.host, code=exc.code, message=exc.message)
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 2 if exc.code == ErrorCode.INVALID_INPUT else 1
    print(json.dumps(info, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
