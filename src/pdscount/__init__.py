"""pdscount: account-count estimates for AT Protocol PDS hosts."""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pdscount")
except PackageNotFoundError:
    # Running from a checkout that was never installed
    warnings.warn(
        "pdscount is not installed, so --version reports '0.0.0+unknown'; "
        "run `pip install -e .` to pick up the real version.",
        RuntimeWarning,
        stacklevel=2,
    )
    __version__ = "0.0.0+unknown"
