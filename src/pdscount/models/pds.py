from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, NonNegativeInt


class CountSource(StrEnum):
    CRON = "cron"
    DYNAMIC = "dynamic"


class PDSInfo(BaseModel):
    """Account count for one PDS host, as cached and returned over HTTP."""

    model_config = ConfigDict(frozen=True)

    host: str  # Canonical hostname, no scheme
    accounts: NonNegativeInt
    updated_at: datetime
    source: CountSource
