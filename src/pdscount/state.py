"""Application state container.

AppState is created once at server startup (inside the Starlette lifespan) or
by the one-shot CLI commands, and handed to the HTTP handlers and the
scheduled refresher.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from pdscount.config import Settings
    from pdscount.estimator import CountEstimator
    from pdscount.memoizer import CountMemoizer
    from pdscount.protocols import CacheProtocol


@dataclass
class AppState:
    """Holds all shared runtime state."""

    settings: Settings
    cache: CacheProtocol
    estimator: CountEstimator
    memoizer: CountMemoizer
    http_client: httpx.AsyncClient | None = None
