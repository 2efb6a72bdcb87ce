"""Tests for scheduler jobs and the manual-sync cooldown."""

import pytest

from conftest import all_logs
from pulse.config import Settings
from pulse.scheduler.jobs import start_scheduler, stop_scheduler, sweep_progress_job, sync_all_job
from pulse.services.container import build_services
from pulse.services.cooldown import SyncCooldown


@pytest.fixture
def services(registry, engine, vault):
    return build_services(Settings(database_url="sqlite://"), registry=registry, engine=engine, vault=vault)


class TestJobs:
    def test_disabled_scheduler_does_not_start(self, services):
        assert start_scheduler(services, Settings(scheduler_enabled=False)) is None
        stop_scheduler(None)

    @pytest.mark.asyncio
    async def test_scheduler_registers_jobs(self, services):
        scheduler = start_scheduler(services, Settings(scheduler_enabled=True, sync_interval_minutes=30))
        try:
            jobs = {job.id: job for job in scheduler.get_jobs()}
            assert set(jobs) == {"sync_all_accounts", "sweep_progress"}
            assert jobs["sync_all_accounts"].max_instances == 1
        finally:
            stop_scheduler(scheduler)

    @pytest.mark.asyncio
    async def test_sync_all_job_syncs_active_accounts(self, services, make_account, db_session):
        account = make_account()
        await sync_all_job(services)
        (log,) = all_logs(db_session, account.id)
        assert log.status == "success"

    def test_sweep_job(self, services):
        services.progress.start("acc")
        services.progress.idle_seconds = 0
        services.progress.start("acc")
        sweep_progress_job(services)
        assert services.progress.get("acc") is None


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestSyncCooldown:
    def test_blocks_until_window_passes(self):
        clock = FakeClock()
        cooldown = SyncCooldown(seconds=60, clock=clock)

        assert cooldown.try_acquire("acc")
        assert not cooldown.try_acquire("acc")
        assert cooldown.remaining("acc") == 60

        clock.now = 59
        assert not cooldown.try_acquire("acc")
        clock.now = 60
        assert cooldown.try_acquire("acc")

    def test_keys_are_independent(self):
        cooldown = SyncCooldown(seconds=60, clock=FakeClock())
        assert cooldown.try_acquire("a")
        assert cooldown.try_acquire("b")
        assert cooldown.remaining("c") == 0
