import asyncio
from datetime import timedelta

import httpx
import pytest

from audit import FetchFailedEvent
from conftest import STEAM_ID64, TTL, transitions
from errors import FetchFailure, InvalidTransition
from models import Verification
from policy import Judgment, ThresholdPolicy
from schemas import ProfileAttributes
from verification import (
    ABSENT,
    ALLOWED_TRANSITIONS,
    VerificationStatus,
    check_transition,
)

LEGAL = {
    (None, "pending"),
    ("pending", "verified"),
    ("verified", "allowed"),
    ("verified", "denied"),
    ("allowed", "pending"),
    ("denied", "pending"),
}


def _allow_all(attributes):
    return Judgment("allowed", "ok")


def _deny_all(attributes):
    return Judgment("denied", "low reputation")


# =========================
# State machine table
# =========================

def test_transition_table_is_exactly_the_lifecycle():
    table = {
        (src.value if src else None, dst.value)
        for src, targets in ALLOWED_TRANSITIONS.items()
        for dst in targets
    }
    assert table == LEGAL


@pytest.mark.parametrize(
    "src,dst",
    [
        (None, VerificationStatus.VERIFIED),
        (VerificationStatus.PENDING, VerificationStatus.ALLOWED),
        (VerificationStatus.VERIFIED, VerificationStatus.PENDING),
        (VerificationStatus.ALLOWED, VerificationStatus.DENIED),
    ],
)
def test_illegal_transitions_raise(src, dst):
    with pytest.raises(InvalidTransition):
        check_transition(STEAM_ID64, src, dst)


# =========================
# Reads
# =========================

def test_get_absent(make_cache):
    assert make_cache().get(STEAM_ID64) == ABSENT


def test_get_terminal_fresh_and_stale(make_cache, add_rows, clock):
    add_rows(
        Verification(
            steam_id=STEAM_ID64,
            status="allowed",
            verdict="allowed",
            steam_level=3,
            created_at=clock.now,
            updated_at=clock.now,
        )
    )
    cache = make_cache()

    entry = cache.get(STEAM_ID64)
    assert entry.status == VerificationStatus.ALLOWED
    assert entry.verdict == VerificationStatus.ALLOWED
    assert entry.attributes == ProfileAttributes(account_level=3)
    assert not entry.is_stale

    clock.advance(TTL + 1)
    assert cache.get(STEAM_ID64).is_stale


def test_get_is_a_pure_read(make_cache, fetcher, lease):
    cache = make_cache()
    cache.get(STEAM_ID64)
    fetcher.fetch.assert_not_called()
    lease.acquire.assert_not_called()


# =========================
# Fetch lifecycle
# =========================

@pytest.mark.asyncio
async def test_ensure_fresh_from_absent_to_judgment(make_cache, audit, lease):
    cache = make_cache(policy=_deny_all)

    task = cache.ensure_fresh(STEAM_ID64, player_name="alice", ip_address="10.0.0.1")
    assert cache.get(STEAM_ID64).status == VerificationStatus.PENDING

    entry = await task

    assert entry.status == VerificationStatus.DENIED
    assert entry.verdict == VerificationStatus.DENIED
    assert entry.reason == "low reputation"
    assert entry.attributes == ProfileAttributes(account_level=12, playtime_minutes=900, rating=2.5)
    assert transitions(audit) == [(None, "pending"), ("pending", "verified"), ("verified", "denied")]
    lease.release.assert_called_once_with(STEAM_ID64)


@pytest.mark.asyncio
async def test_deferred_policy_leaves_record_verified(make_cache):
    cache = make_cache()  # default policy defers to the plugin

    entry = await cache.ensure_fresh(STEAM_ID64)

    assert entry.status == VerificationStatus.VERIFIED
    assert entry.verdict is None
    assert cache.ensure_fresh(STEAM_ID64) is None


@pytest.mark.asyncio
async def test_concurrent_ensure_fresh_issues_one_fetch(make_cache, fetcher):
    cache = make_cache(policy=_allow_all)

    tasks = [cache.ensure_fresh(STEAM_ID64) for _ in range(25)]
    assert all(t is tasks[0] for t in tasks)

    results = await asyncio.gather(*tasks)

    assert fetcher.fetch.await_count == 1
    assert {r.status for r in results} == {VerificationStatus.ALLOWED}


@pytest.mark.asyncio
async def test_identities_do_not_block_each_other(make_cache, fetcher):
    gate = asyncio.Event()

    async def slow_for_one(steam_id):
        if steam_id == STEAM_ID64:
            await gate.wait()
        return ProfileAttributes(account_level=1)

    fetcher.fetch.side_effect = slow_for_one
    cache = make_cache(policy=_allow_all)
    other = "76561197960265729"

    slow = cache.ensure_fresh(STEAM_ID64)
    fast = cache.ensure_fresh(other)

    assert (await fast).status == VerificationStatus.ALLOWED
    assert not slow.done()

    gate.set()
    assert (await slow).status == VerificationStatus.ALLOWED


@pytest.mark.asyncio
async def test_lease_held_elsewhere_skips_fetch(make_cache, fetcher, lease):
    lease.acquire.return_value = False
    cache = make_cache()

    assert cache.ensure_fresh(STEAM_ID64) is None
    assert cache.get(STEAM_ID64) == ABSENT
    fetcher.fetch.assert_not_called()


# =========================
# Failure path
# =========================

@pytest.mark.asyncio
@pytest.mark.parametrize("error", [FetchFailure("upstream down"), httpx.ConnectError("refused")])
async def test_fetch_failure_leaves_record_retryable(make_cache, fetcher, audit, lease, error):
    fetcher.fetch.side_effect = error
    cache = make_cache()

    assert await cache.ensure_fresh(STEAM_ID64) is None

    assert cache.get(STEAM_ID64).status == VerificationStatus.PENDING
    assert not cache.in_flight(STEAM_ID64)
    lease.hold.assert_called_once_with(STEAM_ID64, 30)
    failures = [c.args[0] for c in audit.emit.call_args_list if isinstance(c.args[0], FetchFailedEvent)]
    assert len(failures) == 1

    # Backoff lapsed: the next call retries and succeeds
    fetcher.fetch.side_effect = None
    entry = await cache.ensure_fresh(STEAM_ID64)
    assert entry.status == VerificationStatus.VERIFIED
    assert fetcher.fetch.await_count == 2
    assert set(transitions(audit)) <= LEGAL


@pytest.mark.asyncio
async def test_fetch_timeout_is_a_failure(make_cache, fetcher, audit):
    async def hang(steam_id):
        await asyncio.sleep(10)

    fetcher.fetch.side_effect = hang
    cache = make_cache(fetch_timeout=0.05)

    assert await cache.ensure_fresh(STEAM_ID64) is None

    event = next(c.args[0] for c in audit.emit.call_args_list if isinstance(c.args[0], FetchFailedEvent))
    assert event.error.startswith("FetchTimeout")
    assert cache.get(STEAM_ID64).status == VerificationStatus.PENDING


@pytest.mark.asyncio
async def test_unexpected_fetcher_error_is_a_failure(make_cache, fetcher, audit, lease):
    fetcher.fetch.side_effect = ValueError("malformed upstream payload")
    cache = make_cache()

    assert await cache.ensure_fresh(STEAM_ID64) is None

    event = next(c.args[0] for c in audit.emit.call_args_list if isinstance(c.args[0], FetchFailedEvent))
    assert event.error.startswith("FetchFailure")
    assert "malformed upstream payload" in event.error
    lease.hold.assert_called_once_with(STEAM_ID64, 30)
    assert cache.get(STEAM_ID64).status == VerificationStatus.PENDING
    assert not cache.in_flight(STEAM_ID64)


def test_max_pending_age_must_cover_the_fetch_timeout(make_cache):
    with pytest.raises(ValueError):
        make_cache(fetch_timeout=30, max_pending_age=10)


@pytest.mark.asyncio
async def test_failing_policy_leaves_record_verified(make_cache):
    def broken(attributes):
        raise RuntimeError("bug")

    entry = await make_cache(policy=broken).ensure_fresh(STEAM_ID64)
    assert entry.status == VerificationStatus.VERIFIED


# =========================
# Staleness
# =========================

@pytest.mark.asyncio
async def test_stale_refresh_keeps_serving_old_verdict(make_cache, add_rows, clock, audit, fetcher):
    old = clock.now - timedelta(seconds=10 * TTL)
    add_rows(
        Verification(
            steam_id=STEAM_ID64, status="denied", verdict="denied", reason="alt account",
            created_at=old, updated_at=old,
        )
    )
    cache = make_cache(policy=ThresholdPolicy(min_account_level=5))

    task = cache.ensure_fresh(STEAM_ID64)

    during = cache.get(STEAM_ID64)
    assert during.status == VerificationStatus.PENDING
    assert during.verdict == VerificationStatus.DENIED
    assert during.reason == "alt account"
    assert during.is_stale
    assert during.attributes is None

    after = await task
    assert after.status == VerificationStatus.ALLOWED
    assert not after.is_stale
    assert cache.ensure_fresh(STEAM_ID64) is None
    assert fetcher.fetch.await_count == 1
    assert transitions(audit) == [("denied", "pending"), ("pending", "verified"), ("verified", "allowed")]


@pytest.mark.asyncio
async def test_refresh_without_judgment_keeps_previous_verdict(make_cache, add_rows, clock, audit):
    old = clock.now - timedelta(seconds=10 * TTL)
    add_rows(
        Verification(
            steam_id=STEAM_ID64, status="denied", verdict="denied", reason="alt account",
            created_at=old, updated_at=old,
        )
    )
    cache = make_cache()  # default policy defers to the plugin

    entry = await cache.ensure_fresh(STEAM_ID64)

    assert entry.status == VerificationStatus.VERIFIED
    assert entry.verdict == VerificationStatus.DENIED
    assert entry.reason == "alt account"
    assert entry.is_stale
    assert entry.attributes.account_level == 12
    assert cache.ensure_fresh(STEAM_ID64) is None

    # A new judgment replaces the carried verdict
    judged = cache.resolve(STEAM_ID64, VerificationStatus.ALLOWED, "appeal accepted")
    assert (judged.verdict, judged.reason, judged.is_stale) == (VerificationStatus.ALLOWED, "appeal accepted", False)
    assert transitions(audit) == [("denied", "pending"), ("pending", "verified"), ("verified", "allowed")]


@pytest.mark.asyncio
async def test_fresh_terminal_record_is_not_refetched(make_cache, add_rows, clock, fetcher):
    add_rows(
        Verification(
            steam_id=STEAM_ID64, status="allowed", verdict="allowed",
            created_at=clock.now, updated_at=clock.now,
        )
    )
    assert make_cache().ensure_fresh(STEAM_ID64) is None
    fetcher.fetch.assert_not_called()


# =========================
# Downstream judgment
# =========================

@pytest.mark.asyncio
async def test_resolve_judges_a_verified_record(make_cache, audit):
    cache = make_cache()
    await cache.ensure_fresh(STEAM_ID64)

    entry = cache.resolve(STEAM_ID64, VerificationStatus.ALLOWED, "vouched by admin")

    assert entry.status == VerificationStatus.ALLOWED
    assert entry.verdict == VerificationStatus.ALLOWED
    assert entry.reason == "vouched by admin"
    assert transitions(audit)[-1] == ("verified", "allowed")


@pytest.mark.asyncio
async def test_resolve_rejects_records_not_awaiting_judgment(make_cache):
    cache = make_cache()

    with pytest.raises(InvalidTransition):
        cache.resolve(STEAM_ID64, VerificationStatus.DENIED)

    cache.ensure_fresh(STEAM_ID64)
    with pytest.raises(InvalidTransition):
        cache.resolve(STEAM_ID64, VerificationStatus.DENIED)  # still pending

    await cache.drain()
