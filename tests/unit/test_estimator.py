"""Unit tests for pdscount.estimator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from pdscount.config import EstimatorSettings
from pdscount.errors import ErrorCode, PdsCountError
from pdscount.estimator import CountEstimator, RepoWalk
from pdscount.models.listing import HostPage, RepoPage, RepoRef, Session


def _repo_page(count: int, cursor: str | None = None) -> RepoPage:
    return RepoPage(repos=[RepoRef(did=f"did:plc:{i:06d}") for i in range(count)], cursor=cursor)


def _fetch_error(code: ErrorCode = ErrorCode.LISTING_FETCH_FAILED) -> PdsCountError:
    return PdsCountError(code=code, message="boom", recoverable=True)


def _client(*, repos: list | None = None, hosts: list | None = None) -> AsyncMock:
    client = AsyncMock()
    client.list_repos = AsyncMock(side_effect=repos or [])
    client.list_hosts = AsyncMock(side_effect=hosts or [])
    return client


# ---------------------------------------------------------------------------
# RepoWalk
# ---------------------------------------------------------------------------


class TestRepoWalk:
    def test_complete_walk_is_not_lower_bound(self) -> None:
        walk = RepoWalk(host="h", total=2000, pages=2, complete=True, all_pages_full=True)
        assert walk.lower_bound is False

    def test_capped_full_walk_is_lower_bound(self) -> None:
        walk = RepoWalk(host="h", total=2000, pages=2, complete=False, all_pages_full=True)
        assert walk.lower_bound is True

    def test_short_page_is_not_lower_bound(self) -> None:
        walk = RepoWalk(host="h", total=1400, pages=2, complete=False, all_pages_full=False)
        assert walk.lower_bound is False


# ---------------------------------------------------------------------------
# Single-host walk
# ---------------------------------------------------------------------------


class TestSingleHost:
    async def test_walks_until_end_of_stream(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _repo_page(1000, "c2"), _repo_page(400)])
        estimator = CountEstimator(client, EstimatorSettings(mode="fast", fast_pages=10))

        assert await estimator.estimate("pds.example.com") == 2400
        assert client.list_repos.await_count == 3

    async def test_cursor_is_threaded_through_pages(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _repo_page(1000, "c2"), _repo_page(400)])
        estimator = CountEstimator(client, EstimatorSettings(mode="fast", fast_pages=10))

        await estimator.estimate("pds.example.com")

        cursors = [call.kwargs["cursor"] for call in client.list_repos.await_args_list]
        assert cursors == [None, "c1", "c2"]
        for call in client.list_repos.await_args_list:
            assert call.args[0] == "https://pds.example.com"
            assert call.kwargs["limit"] == 1000

    async def test_page_cap_bounds_fetches(self) -> None:
        pages = (_repo_page(1000, f"c{i}") for i in range(100))
        client = AsyncMock()
        client.list_repos = AsyncMock(side_effect=pages)
        estimator = CountEstimator(client, EstimatorSettings(fastest_pages=2))

        assert await estimator.estimate("pds.example.com") == 2000
        assert client.list_repos.await_count == 2

    async def test_capped_full_pages_logged_as_lower_bound(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _repo_page(1000, "c2")])
        estimator = CountEstimator(client, EstimatorSettings(fastest_pages=2))

        with capture_logs() as logs:
            accounts = await estimator.estimate("pds.example.com")

        assert accounts == 2000
        events = [entry["event"] for entry in logs]
        assert "estimate_lower_bound" in events
        assert "estimate_exact" not in events

    async def test_small_host_logged_as_exact(self) -> None:
        client = _client(repos=[_repo_page(37)])
        estimator = CountEstimator(client, EstimatorSettings())

        with capture_logs() as logs:
            accounts = await estimator.estimate("tiny.example.com")

        assert accounts == 37
        assert any(entry["event"] == "estimate_exact" for entry in logs)

    async def test_first_page_failure_raises_upstream_unavailable(self) -> None:
        client = _client(repos=[_fetch_error()])
        estimator = CountEstimator(client, EstimatorSettings())

        with pytest.raises(PdsCountError) as exc_info:
            await estimator.estimate("down.example.com")

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert "down.example.com" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, PdsCountError)

    async def test_rate_limited_first_page_raises_upstream_unavailable(self) -> None:
        client = _client(repos=[_fetch_error(ErrorCode.RATE_LIMITED)])
        estimator = CountEstimator(client, EstimatorSettings())

        with pytest.raises(PdsCountError) as exc_info:
            await estimator.estimate("busy.example.com")

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert exc_info.value.recoverable is True

    async def test_mid_walk_failure_returns_partial_total(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _fetch_error()])
        estimator = CountEstimator(client, EstimatorSettings(fastest_pages=5))

        with capture_logs() as logs:
            accounts = await estimator.estimate("flaky.example.com")

        assert accounts == 1000
        assert any(entry["event"] == "partial_page_failure" for entry in logs)

    async def test_empty_page_with_cursor_stops(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _repo_page(0, "c2")])
        estimator = CountEstimator(client, EstimatorSettings(fastest_pages=5))

        assert await estimator.estimate("pds.example.com") == 1000
        assert client.list_repos.await_count == 2

    async def test_empty_host_counts_zero(self) -> None:
        client = _client(repos=[_repo_page(0)])
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("empty.example.com") == 0

    async def test_existing_scheme_is_kept(self) -> None:
        client = _client(repos=[_repo_page(3)])
        estimator = CountEstimator(client, EstimatorSettings())

        await estimator.estimate("http://localhost:2583")

        assert client.list_repos.await_args.args[0] == "http://localhost:2583"

    async def test_custom_page_limit(self) -> None:
        client = _client(repos=[_repo_page(100, "c1"), _repo_page(100, "c2")])
        estimator = CountEstimator(client, EstimatorSettings(page_limit=100, fastest_pages=2))

        assert await estimator.estimate("pds.example.com") == 200
        assert client.list_repos.await_args.kwargs["limit"] == 100


class TestFastMode:
    async def test_full_sample_is_extrapolated(self) -> None:
        pages = [_repo_page(1000, f"c{i}") for i in range(3)]
        client = _client(repos=pages)
        settings = EstimatorSettings(mode="fast", fast_pages=3, fast_multiplier=2)
        estimator = CountEstimator(client, settings)

        assert await estimator.estimate("big.example.com") == 6000

    async def test_end_of_stream_is_not_extrapolated(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _repo_page(10)])
        settings = EstimatorSettings(mode="fast", fast_pages=3, fast_multiplier=2)
        estimator = CountEstimator(client, settings)

        assert await estimator.estimate("mid.example.com") == 1010

    async def test_truncated_walk_is_not_extrapolated(self) -> None:
        client = _client(repos=[_repo_page(1000, "c1"), _fetch_error()])
        settings = EstimatorSettings(mode="fast", fast_pages=3, fast_multiplier=2)
        estimator = CountEstimator(client, settings)

        assert await estimator.estimate("flaky.example.com") == 1000


# ---------------------------------------------------------------------------
# Fleet aggregation
# ---------------------------------------------------------------------------


def _host_page(records: list[tuple[str, object]], cursor: str | None = None) -> HostPage:
    return HostPage(
        hosts=[{"hostname": name, "accountCount": count} for name, count in records],
        cursor=cursor,
    )


class TestFleet:
    async def test_umbrella_host_uses_directory(self) -> None:
        client = _client(
            hosts=[
                _host_page(
                    [
                        ("morel.us-east.host.bsky.network", 120),
                        ("pds.example.com", 9999),
                        ("shiitake.us-east.host.bsky.network", 80),
                    ]
                )
            ]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("bsky.social") == 200
        client.list_repos.assert_not_awaited()
        assert client.list_hosts.await_args.args[0] == "https://relay1.us-west.bsky.network"

    async def test_umbrella_match_ignores_case_and_scheme(self) -> None:
        client = _client(hosts=[_host_page([("a.host.bsky.network", 5)])])
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("https://BSKY.social/") == 5

    async def test_directory_is_paginated(self) -> None:
        client = _client(
            hosts=[
                _host_page([("a.host.bsky.network", 1), ("b.host.bsky.network", 2)], "h1"),
                _host_page([("c.host.bsky.network", 3)]),
            ]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("bsky.social") == 6
        cursors = [call.kwargs["cursor"] for call in client.list_hosts.await_args_list]
        assert cursors == [None, "h1"]

    async def test_missing_account_count_counts_zero(self) -> None:
        client = _client(
            hosts=[_host_page([("a.host.bsky.network", None), ("b.host.bsky.network", 7)])]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("bsky.social") == 7

    async def test_failed_member_contributes_zero(self) -> None:
        client = _client(
            hosts=[
                _host_page(
                    [
                        ("a.host.bsky.network", 10),
                        ("b.host.bsky.network", -1),
                        ("c.host.bsky.network", 25),
                    ]
                )
            ]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        with capture_logs() as logs:
            accounts = await estimator.estimate("bsky.social")

        assert accounts == 35
        failures = [entry for entry in logs if entry["event"] == "fleet_member_failed"]
        assert [entry["member"] for entry in failures] == ["b.host.bsky.network"]
        assert failures[0]["code"] == ErrorCode.MEMBER_FETCH_FAILED

    async def test_malformed_member_record_contributes_zero(self) -> None:
        client = _client(
            hosts=[
                _host_page(
                    [
                        ("a.host.bsky.network", 10),
                        ("b.host.bsky.network", "n/a"),
                        ("c.host.bsky.network", 25),
                    ]
                )
            ]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        with capture_logs() as logs:
            accounts = await estimator.estimate("bsky.social")

        assert accounts == 35
        failures = [entry for entry in logs if entry["event"] == "fleet_member_failed"]
        assert [entry["member"] for entry in failures] == ["b.host.bsky.network"]
        assert failures[0]["code"] == ErrorCode.MEMBER_FETCH_FAILED

    async def test_member_without_hostname_contributes_zero(self) -> None:
        page = HostPage(
            hosts=[
                {"hostname": "a.host.bsky.network", "accountCount": 10},
                {"accountCount": 500},
                "not-a-record",
            ]
        )
        estimator = CountEstimator(_client(hosts=[page]), EstimatorSettings())

        with capture_logs() as logs:
            accounts = await estimator.estimate("bsky.social")

        assert accounts == 10
        failures = [entry for entry in logs if entry["event"] == "fleet_member_failed"]
        assert len(failures) == 2
        assert {entry["code"] for entry in failures} == {ErrorCode.MEMBER_FETCH_FAILED}

    async def test_listing_member_with_unusable_hostname_is_skipped(self) -> None:
        async def list_repos(service: str, **_: object) -> RepoPage:
            return _repo_page(10)

        client = _client(
            hosts=[
                _host_page(
                    [
                        ("a.host.bsky.network", 0),
                        ("b\x00.host.bsky.network", 0),
                        ("bad_name.host.bsky.network", 0),
                    ]
                )
            ]
        )
        client.list_repos = AsyncMock(side_effect=list_repos)
        estimator = CountEstimator(client, EstimatorSettings(fleet_member_source="listing"))

        with capture_logs() as logs:
            accounts = await estimator.estimate("bsky.social")

        assert accounts == 10
        client.list_repos.assert_awaited_once()
        assert client.list_repos.await_args.args[0] == "https://a.host.bsky.network"
        failures = [entry for entry in logs if entry["event"] == "fleet_member_failed"]
        assert [entry["code"] for entry in failures] == [ErrorCode.INVALID_INPUT] * 2

    async def test_listing_members_tolerate_fetch_error(self) -> None:
        pages = {
            "https://a.host.bsky.network": _repo_page(10),
            "https://b.host.bsky.network": _fetch_error(),
            "https://c.host.bsky.network": _repo_page(25),
        }

        async def list_repos(service: str, **_: object) -> RepoPage:
            result = pages[service]
            if isinstance(result, Exception):
                raise result
            return result

        client = _client(
            hosts=[
                _host_page(
                    [
                        ("a.host.bsky.network", 0),
                        ("b.host.bsky.network", 0),
                        ("c.host.bsky.network", 0),
                    ]
                )
            ]
        )
        client.list_repos = AsyncMock(side_effect=list_repos)
        estimator = CountEstimator(client, EstimatorSettings(fleet_member_source="listing"))

        with capture_logs() as logs:
            accounts = await estimator.estimate("bsky.social")

        assert accounts == 35
        assert client.list_repos.await_count == 3
        failures = [entry for entry in logs if entry["event"] == "fleet_member_failed"]
        assert [entry["member"] for entry in failures] == ["b.host.bsky.network"]
        assert failures[0]["code"] == ErrorCode.UPSTREAM_UNAVAILABLE

    async def test_each_member_counted_once_under_concurrency(self) -> None:
        names = [f"m{i}.host.bsky.network" for i in range(25)]
        claimed: list[str] = []

        async def list_repos(service: str, **_: object) -> RepoPage:
            claimed.append(service)
            await asyncio.sleep(0)
            return _repo_page(2)

        client = _client(hosts=[_host_page([(name, 0) for name in names])])
        client.list_repos = AsyncMock(side_effect=list_repos)
        settings = EstimatorSettings(fleet_member_source="listing", fleet_concurrency=4)
        estimator = CountEstimator(client, settings)

        assert await estimator.estimate("bsky.social") == 50
        assert sorted(claimed) == sorted(f"https://{name}" for name in names)

    async def test_directory_first_page_failure_raises(self) -> None:
        client = _client(hosts=[_fetch_error()])
        estimator = CountEstimator(client, EstimatorSettings())

        with pytest.raises(PdsCountError) as exc_info:
            await estimator.estimate("bsky.social")

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE

    async def test_directory_later_page_failure_truncates(self) -> None:
        client = _client(
            hosts=[_host_page([("a.host.bsky.network", 4)], "h1"), _fetch_error()]
        )
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("bsky.social") == 4

    async def test_directory_page_cap(self) -> None:
        pages = (_host_page([(f"m{i}.host.bsky.network", 1)], f"h{i}") for i in range(100))
        client = AsyncMock()
        client.list_hosts = AsyncMock(side_effect=pages)
        estimator = CountEstimator(client, EstimatorSettings(directory_max_pages=3))

        assert await estimator.estimate("bsky.social") == 3
        assert client.list_hosts.await_count == 3

    async def test_empty_fleet_counts_zero(self) -> None:
        client = _client(hosts=[_host_page([("pds.example.com", 50)])])
        estimator = CountEstimator(client, EstimatorSettings())

        assert await estimator.estimate("bsky.social") == 0

    async def test_session_is_passed_to_directory(self) -> None:
        session = Session(did="did:plc:me", handle="me.test", accessJwt="jwt")
        sessions = AsyncMock()
        sessions.get_session = AsyncMock(return_value=session)
        client = _client(hosts=[_host_page([("a.host.bsky.network", 1)])])
        estimator = CountEstimator(client, EstimatorSettings(), sessions)

        await estimator.estimate("bsky.social")

        assert client.list_hosts.await_args.kwargs["session"] is session

    async def test_login_failure_raises_upstream_unavailable(self) -> None:
        sessions = AsyncMock()
        sessions.get_session = AsyncMock(
            side_effect=PdsCountError(code=ErrorCode.LOGIN_FAILED, message="bad password")
        )
        client = _client()
        estimator = CountEstimator(client, EstimatorSettings(), sessions)

        with pytest.raises(PdsCountError) as exc_info:
            await estimator.estimate("bsky.social")

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        client.list_hosts.assert_not_awaited()
