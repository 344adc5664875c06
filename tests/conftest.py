"""
Shared pytest fixtures for the mailgate test suite.

Autouse fixtures below isolate tests from live state:
  - Audit logger -> temp directory   (no fake quota events in ./audit_logs)
  - Settings     -> per-test object  (no .env or environment leakage)
  - Engine       -> reset singleton  (routes never reach a real Redis)

Redis is replaced by fakeredis. Clients built on the same FakeServer
share one keyspace, which is how the tests model several fleet
instances talking to one Redis.
"""

from datetime import datetime, timezone

import fakeredis
import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError, ReadOnlyError

from mailgate.config import Settings, override_settings
from mailgate.store.keys import KeySpace


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the global AuditLogger at a temp directory for every test."""
    import mailgate.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = audit_mod.AuditLogger(tmp_path / "audit_logs")

    yield audit_mod._audit_logger

    audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_singletons():
    """Reset the settings and engine singletons around every test."""
    import mailgate.engine as engine_mod

    override_settings(Settings())
    engine_mod.set_engine(None)
    yield
    override_settings(None)
    engine_mod.set_engine(None)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def make_client(redis_server):
    """Factory for extra clients on the same fake server (one per 'instance')."""

    def _make():
        return fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)

    return _make


@pytest.fixture
def redis_client(make_client):
    return make_client()


@pytest.fixture
def keys():
    return KeySpace("test:")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        key_prefix="test:",
        db_path=str(tmp_path / "mailgate.db"),
        audit_dir=str(tmp_path / "audit_logs"),
        admin_token="secret-token",
    )


class FixedClock:
    """Settable clock for code that takes ``clock=`` (always UTC-aware)."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 11, 11, 12, 0, tzinfo=timezone.utc))


class FailingRedis:
    """Client whose every command raises the given redis-py error."""

    def __init__(self, error):
        self.error = error

    def pipeline(self, *args, **kwargs):
        raise self.error

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise self.error

        return _fail


@pytest.fixture
def down_client():
    return FailingRedis(ConnectionError("Error 111 connecting to localhost:6379. Connection refused."))


@pytest.fixture
def readonly_client():
    return FailingRedis(ReadOnlyError("You can't write against a read only replica."))


class RecordingSink:
    """AlertSink that remembers what it was told."""

    def __init__(self):
        self.alerts = []

    async def notify_threshold(self, percent_used, count, cap):
        self.alerts.append((percent_used, count, cap))


@pytest.fixture
def sink():
    return RecordingSink()


class BrokenSink:
    """AlertSink whose delivery always raises (pager or webhook client bug)."""

    def __init__(self):
        self.calls = 0

    async def notify_threshold(self, percent_used, count, cap):
        self.calls += 1
        raise RuntimeError("pager down")


@pytest.fixture
def broken_sink():
    return BrokenSink()
