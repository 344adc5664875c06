"""
Tests for the fleet JobScheduler wrapper.

Covers: task registration with APScheduler, lock-guarded execution
(one instance runs, the rest skip), handler failure capture, and the
release-on-completion option.
"""

import asyncio

import pytest

from mailgate.jobs.job_lock import DistributedJobLock
from mailgate.jobs.scheduler import JobScheduler, ScheduledTask


# ===================================================================
# Helpers
# ===================================================================


class CountingHandler:
    def __init__(self, result="done", error=None, delay=0.0):
        self.calls = 0
        self.result = result
        self.error = error
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _make_scheduler(client, keys) -> JobScheduler:
    return JobScheduler(DistributedJobLock(client, keys))


# ===================================================================
# TestRegistration
# ===================================================================


class TestRegistration:
    def test_register_adds_cron_job(self, redis_client, keys):
        sched = _make_scheduler(redis_client, keys)
        sched.register(ScheduledTask("digest", "0 9 * * *", CountingHandler(), 3600))

        job = sched.scheduler.get_job("mailgate_digest")
        assert job is not None
        assert job.args == ("digest",)
        assert [t.name for t in sched.tasks] == ["digest"]

    def test_trigger_fields(self):
        trigger = ScheduledTask("reconciliation", "59 23 * * *", CountingHandler(), 600).trigger()
        fields = {f.name: str(f) for f in trigger.fields}
        assert fields["hour"] == "23"
        assert fields["minute"] == "59"
        assert str(trigger.timezone) == "UTC"

    def test_invalid_cron_rejected(self):
        with pytest.raises(ValueError):
            ScheduledTask("digest", "not a cron", CountingHandler(), 3600).trigger()

    def test_task_needs_positive_ttl(self, redis_client, keys):
        sched = _make_scheduler(redis_client, keys)
        with pytest.raises(ValueError):
            sched.register(ScheduledTask("digest", "0 9 * * *", CountingHandler(), 0))

    def test_not_running_until_started(self, redis_client, keys):
        sched = _make_scheduler(redis_client, keys)
        assert sched.is_running is False
        sched.stop()  # no-op


# ===================================================================
# TestRunGuarded
# ===================================================================


class TestRunGuarded:
    @pytest.mark.asyncio
    async def test_runs_handler_when_lock_won(self, redis_client, keys):
        handler = CountingHandler(result={"sent": 3})
        sched = _make_scheduler(redis_client, keys)
        sched.register(ScheduledTask("digest", "0 9 * * *", handler, 3600))

        run = await sched.run_guarded("digest")
        assert run.ran is True
        assert run.result == {"sent": 3}
        assert run.error is None
        assert handler.calls == 1
        assert sched.get_last_run("digest")["ran"] is True

    @pytest.mark.asyncio
    async def test_fleet_tick_runs_job_exactly_once(self, make_client, keys):
        handler = CountingHandler(delay=0.01)
        fleet = [_make_scheduler(make_client(), keys) for _ in range(5)]
        for sched in fleet:
            sched.register(ScheduledTask("digest", "0 9 * * *", handler, 3600))

        runs = await asyncio.gather(*(sched.run_guarded("digest") for sched in fleet))
        assert handler.calls == 1
        assert sum(run.ran for run in runs) == 1

    @pytest.mark.asyncio
    async def test_lock_kept_after_completion_by_default(self, redis_client, keys):
        handler = CountingHandler()
        sched = _make_scheduler(redis_client, keys)
        sched.register(ScheduledTask("digest", "0 9 * * *", handler, 3600))

        await sched.run_guarded("digest")
        second = await sched.run_guarded("digest")
        assert second.ran is False
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_release_on_completion(self, redis_client, keys):
        handler = CountingHandler()
        sched = _make_scheduler(redis_client, keys)
        sched.register(
            ScheduledTask("digest", "0 9 * * *", handler, 3600, release_on_completion=True)
        )

        await sched.run_guarded("digest")
        await sched.run_guarded("digest")
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_handler_error_captured(self, redis_client, keys):
        handler = CountingHandler(error=RuntimeError("ledger offline"))
        sched = _make_scheduler(redis_client, keys)
        sched.register(ScheduledTask("reconciliation", "59 23 * * *", handler, 600))

        run = await sched.run_guarded("reconciliation")
        assert run.ran is True
        assert run.error == "ledger offline"

    @pytest.mark.asyncio
    async def test_store_outage_skips_run(self, down_client, keys):
        handler = CountingHandler()
        sched = _make_scheduler(down_client, keys)
        sched.register(ScheduledTask("digest", "0 9 * * *", handler, 3600))

        run = await sched.run_guarded("digest")
        assert run.ran is False
        assert run.error is not None
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_skip_is_audited(self, make_client, keys, _isolate_audit_logs):
        first = _make_scheduler(make_client(), keys)
        second = _make_scheduler(make_client(), keys)
        for sched in (first, second):
            sched.register(ScheduledTask("digest", "0 9 * * *", CountingHandler(), 3600))

        await first.run_guarded("digest")
        await second.run_guarded("digest")
        assert "job.skipped" in _isolate_audit_logs.log_file.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_start_and_stop_inside_loop(self, redis_client, keys):
        sched = _make_scheduler(redis_client, keys)
        sched.register(ScheduledTask("digest", "0 9 * * *", CountingHandler(), 3600))
        sched.start()
        assert sched.is_running is True
        sched.stop()
