"""Wire models for the com.atproto.sync listings and server sessions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RepoRef(BaseModel):
    did: str
    head: str | None = None
    rev: str | None = None
    active: bool | None = None


class RepoPage(BaseModel):
    """One page of com.atproto.sync.listRepos."""

    repos: list[RepoRef] = []
    cursor: str | None = None


class HostRecord(BaseModel):
    """A PDS as reported by a relay's com.atproto.sync.listHosts."""

    model_config = ConfigDict(populate_by_name=True)

    hostname: str
    account_count: int | None = Field(default=None, alias="accountCount")
    seq: int | None = None
    status: str | None = None


class HostPage(BaseModel):
    """One page of com.atproto.sync.listHosts.

    Entries are kept as raw records so one bad member cannot sink the page;
    each is validated into a ``HostRecord`` when it is counted.
    """

    hosts: list[Any] = []
    cursor: str | None = None


class Session(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    handle: str
    access_jwt: str = Field(alias="accessJwt")
    refresh_jwt: str | None = Field(default=None, alias="refreshJwt")
