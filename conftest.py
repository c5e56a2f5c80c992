import hashlib
import os
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

# Settings are read at import time; configure before any app module loads
TEST_PLUGIN_KEY = "test-plugin-key-must-be-longer-than-20-chars"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PLUGIN_API_KEY_HASHES"] = hashlib.sha256(TEST_PLUGIN_KEY.encode()).hexdigest()
os.environ.pop("AUDIT_SINK_URL", None)

from audit import AuditSink, TransitionEvent  # noqa: E402
from db import init_db, make_engine, make_session_factory, session_scope  # noqa: E402
from decision import DecisionEngine  # noqa: E402
from lease import FetchLease  # noqa: E402
from schemas import ProfileAttributes  # noqa: E402
from stores import BanStore, ConnectionLogStore, VerificationStore, WhitelistStore  # noqa: E402
from verification import VerificationCache  # noqa: E402

TTL = 3600

# Real SteamID64s for the same account in every form
STEAM_ID64 = "76561197960287930"
STEAM_ID2 = "STEAM_1:0:11101"
STEAM_ID3 = "[U:1:22202]"


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def add_rows(session_factory):
    def _add(*rows):
        with session_scope(session_factory) as db:
            db.add_all(rows)
            db.commit()
    return _add


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    return MagicMock(spec=AuditSink)


@pytest.fixture
def lease():
    mock = MagicMock(spec=FetchLease)
    mock.acquire.return_value = True
    return mock


@pytest.fixture
def fetcher():
    mock = MagicMock()
    mock.fetch = AsyncMock(
        return_value=ProfileAttributes(account_level=12, playtime_minutes=900, rating=2.5)
    )
    return mock


@pytest.fixture
def make_cache(session_factory, fetcher, audit, lease, clock):
    def _make(**overrides):
        options = dict(
            audit=audit,
            lease=lease,
            ttl_seconds=TTL,
            fetch_timeout=1.0,
            max_pending_age=60,
            retry_backoff=30,
            clock=clock,
        )
        options.update(overrides)
        return VerificationCache(VerificationStore(session_factory), fetcher, **options)
    return _make


@pytest.fixture
def make_engine_under_test(session_factory, audit, clock, make_cache):
    def _make(**cache_overrides):
        return DecisionEngine(
            bans=BanStore(session_factory),
            whitelist=WhitelistStore(session_factory),
            cache=make_cache(**cache_overrides),
            connections=ConnectionLogStore(session_factory),
            audit=audit,
            clock=clock,
        )
    return _make


def transitions(audit_mock):
    """(from, to) pairs of every transition event emitted so far."""
    return [
        (call.args[0].from_status, call.args[0].to_status)
        for call in audit_mock.emit.call_args_list
        if isinstance(call.args[0], TransitionEvent)
    ]
