"""
Tests for the EmailQuotaService send gate.

Covers: lock-on-rejection, lock short-circuit for normal priority,
first admission of a new day clearing a leftover lock, threshold
alerts on the send path, fail-open/fail-closed store outages, and the
status snapshot.
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from mailgate.engine import build_engine, get_quota_service, set_engine
from mailgate.quota.admission import (
    REASON_CAP_EXCEEDED,
    REASON_QUOTA_LOCKED,
    REASON_STORE_UNAVAILABLE,
    Priority,
)
from mailgate.transport import LogTransport


# ===================================================================
# Helpers
# ===================================================================


def _make_engine(settings, client, clock, sink=None, **overrides):
    settings = dataclasses.replace(settings, **overrides)
    return build_engine(settings, client, transport=LogTransport(), alert_sink=sink, clock=clock)


def _audit_events(audit_logger):
    return audit_logger.log_file.read_text(encoding="utf-8")


# ===================================================================
# TestQuotaLock
# ===================================================================


class TestQuotaLock:
    @pytest.mark.asyncio
    async def test_rejection_sets_lock_until_next_midnight(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=2)
        for _ in range(2):
            assert (await engine.quota.request_send("normal")).admitted

        rejected = await engine.quota.request_send("normal")
        assert rejected.admitted is False
        assert rejected.reason == REASON_CAP_EXCEEDED
        assert rejected.count == 3

        assert await engine.quota.is_quota_locked() is True
        assert await engine.quota.get_next_retry_time() == datetime(
            2025, 11, 12, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_locked_normal_request_skips_counter(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=1)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")  # rejected, locks

        result = await engine.quota.request_send("normal")
        assert result.admitted is False
        assert result.reason == REASON_QUOTA_LOCKED
        assert result.count is None
        assert await engine.counter.peek("2025-11-11") == 2

    @pytest.mark.asyncio
    async def test_high_priority_ignores_lock(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=1)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")

        result = await engine.quota.request_send(Priority.HIGH)
        assert result.admitted is True
        assert result.count == 3

    @pytest.mark.asyncio
    async def test_first_admission_of_new_day_clears_lock(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=1)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")
        assert await engine.quota.is_quota_locked()

        clock.advance(timedelta(days=1))
        result = await engine.quota.request_send("high")
        assert result.count == 1
        assert await engine.quota.is_quota_locked() is False
        assert await engine.quota.get_next_retry_time() is None

    @pytest.mark.asyncio
    async def test_lock_audited(self, settings, redis_client, clock, _isolate_audit_logs):
        engine = _make_engine(settings, redis_client, clock, daily_cap=1)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")
        assert "quota.locked" in _audit_events(_isolate_audit_logs)


# ===================================================================
# TestAlertsOnSendPath
# ===================================================================


class TestAlertsOnSendPath:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_admission(
        self, settings, redis_client, clock, broken_sink, caplog
    ):
        engine = _make_engine(
            settings, redis_client, clock, sink=broken_sink, daily_cap=10, alert_thresholds=(80,)
        )
        results = [await engine.quota.request_send("normal") for _ in range(9)]

        assert all(r.admitted for r in results)
        assert results[7].count == 8
        assert broken_sink.calls == 1
        assert "Threshold alert delivery failed" in caplog.text

    @pytest.mark.asyncio
    async def test_thresholds_fire_once_each(self, settings, redis_client, clock, sink):
        engine = _make_engine(settings, redis_client, clock, sink=sink, daily_cap=10)
        for _ in range(12):
            await engine.quota.request_send("normal")

        assert sink.alerts == [(80, 8, 10), (90, 9, 10), (100, 10, 10)]

    @pytest.mark.asyncio
    async def test_no_alert_for_rejected_request(self, settings, redis_client, clock, sink):
        engine = _make_engine(
            settings, redis_client, clock, sink=sink, daily_cap=2, alert_thresholds=(100,)
        )
        for _ in range(4):
            await engine.quota.request_send("normal")
        assert sink.alerts == [(100, 2, 2)]


# ===================================================================
# TestStoreOutage
# ===================================================================


class TestStoreOutage:
    @pytest.mark.asyncio
    async def test_normal_priority_fails_closed(self, settings, down_client, clock):
        engine = _make_engine(settings, down_client, clock)
        result = await engine.quota.request_send("normal")
        assert result.admitted is False
        assert result.reason == REASON_STORE_UNAVAILABLE
        assert result.count is None

    @pytest.mark.asyncio
    async def test_high_priority_fails_open(self, settings, down_client, clock):
        engine = _make_engine(settings, down_client, clock)
        result = await engine.quota.request_send("high")
        assert result.admitted is True
        assert result.reason == REASON_STORE_UNAVAILABLE
        assert result.count is None

    @pytest.mark.asyncio
    async def test_normal_fail_open_when_configured(self, settings, down_client, clock):
        engine = _make_engine(settings, down_client, clock, fail_open_normal=True)
        result = await engine.quota.request_send("normal")
        assert result.admitted is True

    @pytest.mark.asyncio
    async def test_outage_audited(self, settings, down_client, clock, _isolate_audit_logs):
        engine = _make_engine(settings, down_client, clock)
        await engine.quota.request_send("normal")
        assert "quota.store_unavailable" in _audit_events(_isolate_audit_logs)

    @pytest.mark.asyncio
    async def test_read_only_replica_high_priority_fails_open(self, settings, readonly_client, clock):
        engine = _make_engine(settings, readonly_client, clock)
        result = await engine.quota.request_send("high")
        assert result.admitted is True
        assert result.reason == REASON_STORE_UNAVAILABLE
        assert result.count is None

    @pytest.mark.asyncio
    async def test_read_only_replica_normal_priority_fails_closed(self, settings, readonly_client, clock):
        engine = _make_engine(settings, readonly_client, clock)
        result = await engine.quota.request_send("normal")
        assert result.admitted is False
        assert result.reason == REASON_STORE_UNAVAILABLE


# ===================================================================
# TestStatus
# ===================================================================


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_under_cap(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=5)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")

        status = await engine.quota.status()
        assert status == {
            "date": "2025-11-11",
            "count": 2,
            "cap": 5,
            "remaining": 3,
            "over_quota_by": 0,
            "locked": False,
            "next_retry": None,
        }

    @pytest.mark.asyncio
    async def test_status_over_cap(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock, daily_cap=1)
        await engine.quota.request_send("normal")
        await engine.quota.request_send("normal")

        status = await engine.quota.status()
        assert status["remaining"] == 0
        assert status["over_quota_by"] == 1
        assert status["locked"] is True
        assert status["next_retry"] == "2025-11-12T00:00:00+00:00"

    def test_get_quota_service_uses_engine_singleton(self, settings, redis_client, clock):
        engine = _make_engine(settings, redis_client, clock)
        set_engine(engine)
        assert get_quota_service() is engine.quota


# ===================================================================
# TestDailyScenario
# ===================================================================


class TestDailyScenario:
    """One UTC day at the default cap of 200, end to end."""

    @pytest.mark.asyncio
    async def test_default_cap_day(self, settings, redis_client, clock, sink):
        engine = _make_engine(settings, redis_client, clock, sink=sink)
        assert engine.quota.daily_cap == 200

        # 160 normal sends: 80% alert fires, still admitted
        results = [await engine.quota.request_send("normal") for _ in range(160)]
        assert all(r.admitted for r in results)
        assert results[-1].count == 160
        assert sink.alerts == [(80, 160, 200)]

        # up to the cap: still admitted
        results = [await engine.quota.request_send("normal") for _ in range(40)]
        assert all(r.admitted for r in results)
        assert results[-1].count == 200
        assert sink.alerts[-1] == (100, 200, 200)

        # one past the cap: rejected and locked until the next UTC day
        rejected = await engine.quota.request_send("normal")
        assert rejected.admitted is False
        assert rejected.count == 201
        assert await engine.quota.is_quota_locked() is True
        assert await engine.quota.get_next_retry_time() == datetime(
            2025, 11, 12, tzinfo=timezone.utc
        )

        # high priority right after: admitted over the cap
        urgent = await engine.quota.request_send("high")
        assert urgent.admitted is True
        assert urgent.count == 202
