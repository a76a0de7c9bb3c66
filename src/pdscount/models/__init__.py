from __future__ import annotations

from pdscount.models.listing import HostPage, HostRecord, RepoPage, RepoRef, Session
from pdscount.models.pds import CountSource, PDSInfo

__all__ = [
    # pds
    "CountSource",
    "PDSInfo",
    # listing
    "RepoRef",
    "RepoPage",
    "HostRecord",
    "HostPage",
    "Session",
]
