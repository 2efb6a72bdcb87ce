"""Tests for the sync orchestrator state machine."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from conftest import FakeFetcher, all_logs, all_metrics, fake_definition, metric
from pulse.connectors.base import SyncResult, SyncStep, SyncStepStatus
from pulse.connectors.registry import ConnectorRegistry
from pulse.core.clock import as_utc, utcnow
from pulse.models.sync_models import SyncLog, SyncStatus
from pulse.services.metric_store import MetricStore
from pulse.services.sync_engine import (
    STALE_SYNC_ERROR,
    SyncEngine,
    SyncErrorKind,
    SyncOptions,
)


def add_log(session_factory, account_id, status, started_at, completed_at=None) -> int:
    with session_factory() as session:
        log = SyncLog(
            account_id=account_id,
            status=status.value,
            started_at=started_at,
            completed_at=completed_at,
        )
        session.add(log)
        session.commit()
        session.refresh(log)
        return log.id


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_missing_account(self, sync_engine):
        outcome = await sync_engine.sync_account("does-not-exist")
        assert not outcome.success
        assert outcome.error_kind == SyncErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_account_creates_no_log(self, sync_engine, make_account, db_session):
        account = make_account(is_active=False)
        outcome = await sync_engine.sync_account(account.id)

        assert outcome.error_kind == SyncErrorKind.INACTIVE
        assert all_logs(db_session, account.id) == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self, sync_engine, make_account, db_session):
        account = make_account(provider_id="nope")
        outcome = await sync_engine.sync_account(account.id)

        assert outcome.error_kind == SyncErrorKind.UNKNOWN_PROVIDER
        assert "nope" in outcome.error
        assert all_logs(db_session, account.id) == []


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_success_stores_metrics_and_finalizes(
        self, sync_engine, fetcher, make_account, db_session, progress
    ):
        fetcher.phases = {"fetch": [metric(value=10), metric("mrr", 99, currency="USD")]}
        account = make_account()

        outcome = await sync_engine.sync_account(account.id)

        assert outcome.success
        assert outcome.error is None
        assert outcome.records_processed == 2
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.SUCCESS.value
        assert log.completed_at is not None
        assert log.records_processed == 2
        assert len(all_metrics(db_session, account.id)) == 2
        assert progress.get(account.id).status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_fetcher_sees_decrypted_credentials(self, sync_engine, fetcher, make_account):
        account = make_account(credentials={"api_key": "plain-value"})
        await sync_engine.sync_account(account.id)

        seen = fetcher.calls[0]["account"]
        assert seen.credentials == {"api_key": "plain-value"}
        assert seen.provider_id == "fake"

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, sync_engine, fetcher, make_account, db_session):
        fetcher.phases = {
            "fetch": [
                metric(value=1),
                metric(value=2, project_id="p1"),
                metric(value=3, metadata={"country": "US"}),
            ]
        }
        account = make_account()

        await sync_engine.sync_account(account.id)
        await sync_engine.sync_account(account.id)

        assert len(all_metrics(db_session, account.id)) == 3
        assert len(all_logs(db_session, account.id)) == 2

    @pytest.mark.asyncio
    async def test_steps_reach_progress_as_they_happen(
        self, sync_engine, fetcher, make_account, progress
    ):
        account = make_account()
        fetcher.phases = {"first": [metric()], "second": []}
        seen = []

        original = progress.append_step

        def spy(account_id, step):
            original(account_id, step)
            seen.append((step.key, step.status))

        progress.append_step = spy
        await sync_engine.sync_account(account.id)

        assert seen == [
            ("first", SyncStepStatus.RUNNING),
            ("first", SyncStepStatus.SUCCESS),
            ("second", SyncStepStatus.RUNNING),
            ("second", SyncStepStatus.SUCCESS),
        ]
        assert [s.key for s in progress.get(account.id).steps] == ["first", "second"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_partial_failure_is_still_success(
        self, sync_engine, fetcher, make_account, db_session
    ):
        fetcher.phases = {
            "charges": [metric("revenue", 10)],
            "subscriptions": RuntimeError("Stripe API error 500"),
            "customers": [metric("new_customers", 2)],
        }
        account = make_account()

        outcome = await sync_engine.sync_account(account.id)

        assert outcome.success
        assert outcome.error
        assert [s.status for s in outcome.steps].count(SyncStepStatus.ERROR) == 1
        stored = {m.metric_type for m in all_metrics(db_session, account.id)}
        assert stored == {"revenue", "new_customers"}
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_total_failure_stores_nothing(self, sync_engine, fetcher, make_account, db_session):
        fetcher.phases = {"a": RuntimeError("down"), "b": RuntimeError("down")}
        account = make_account()

        outcome = await sync_engine.sync_account(account.id)

        assert not outcome.success
        assert outcome.error_kind == SyncErrorKind.FAILED
        assert outcome.error == "All sync steps failed"
        assert all_metrics(db_session, account.id) == []
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.ERROR.value
        assert log.completed_at is not None

    @pytest.mark.asyncio
    async def test_exception_is_caught_sanitized_and_logged(
        self, sync_engine, fetcher, make_account, db_session, progress
    ):
        fetcher.raises = RuntimeError("auth failed for sk_live_abcdefghijklmnop1234")
        account = make_account()

        outcome = await sync_engine.sync_account(account.id)

        assert not outcome.success
        assert "sk_live_" not in outcome.error
        assert "[REDACTED]" in outcome.error
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.ERROR.value
        assert "sk_live_" not in log.error
        assert progress.get(account.id).status == SyncStatus.ERROR
        assert not sync_engine.locks.held(account.id)

    @pytest.mark.asyncio
    async def test_phase_errors_are_sanitized_in_steps_progress_and_logs(
        self, sync_engine, fetcher, make_account, progress, caplog
    ):
        fetcher.phases = {
            "charges": [metric()],
            "subscriptions": RuntimeError("auth failed for sk_live_abcdefghijklmnop1234"),
        }
        account = make_account()

        with caplog.at_level(logging.WARNING, logger="pulse"):
            outcome = await sync_engine.sync_account(account.id)

        assert outcome.success
        (failed,) = [s for s in outcome.steps if s.status == SyncStepStatus.ERROR]
        assert "sk_live_" not in failed.error
        assert "[REDACTED]" in failed.error
        tracked = {s.key: s for s in progress.get(account.id).steps}
        assert "sk_live_" not in tracked["subscriptions"].error
        assert "[REDACTED]" in tracked["subscriptions"].error
        assert "Phase subscriptions failed" in caplog.text
        assert "sk_live_" not in caplog.text

    @pytest.mark.asyncio
    async def test_step_errors_from_any_adapter_are_sanitized(
        self, vault, progress, session_factory, make_account
    ):
        leaked = "token rejected: sk_live_abcdefghijklmnop1234"

        class RawStepFetcher(FakeFetcher):
            async def sync(self, account, since=None, report_step=None):
                step = SyncStep(key="fetch", label="Fetch", status=SyncStepStatus.ERROR, error=leaked)
                report_step(step)
                return SyncResult(
                    success=True, records_processed=0, steps=[step], error="Some sync steps failed: Fetch"
                )

        registry = ConnectorRegistry([fake_definition(RawStepFetcher(), "raw")])
        engine = SyncEngine(registry, vault, MetricStore(), progress, session_factory)
        account = make_account(provider_id="raw")

        outcome = await engine.sync_account(account.id)

        assert "sk_live_" not in outcome.steps[0].error
        assert "sk_live_" not in progress.get(account.id).steps[0].error

    @pytest.mark.asyncio
    async def test_store_failure_finalizes_error(
        self, registry, vault, progress, session_factory, fetcher, make_account, db_session
    ):
        class BrokenStore(MetricStore):
            async def store_metrics(self, session, account_id, metrics):
                raise RuntimeError("disk full")

        engine = SyncEngine(registry, vault, BrokenStore(), progress, session_factory)
        fetcher.phases = {"fetch": [metric()]}
        account = make_account()

        outcome = await engine.sync_account(account.id)

        assert not outcome.success
        assert outcome.error == "disk full"
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_undecryptable_credentials_become_error(
        self, sync_engine, make_account, session_factory, db_session
    ):
        account = make_account()
        with session_factory() as session:
            row = session.get(type(account), account.id)
            row.encrypted_credentials = "00" * 12 + ":" + "00" * 16 + ":" + "abcd"
            session.add(row)
            session.commit()

        outcome = await sync_engine.sync_account(account.id)

        assert not outcome.success
        (log,) = all_logs(db_session, account.id)
        assert log.status == SyncStatus.ERROR.value


class TestSessionScope:
    @pytest.mark.asyncio
    async def test_no_session_is_open_while_the_provider_is_called(
        self, engine, vault, progress, make_account, db_session
    ):
        open_sessions = {"count": 0}

        class CountingSession(Session):
            def __enter__(self):
                open_sessions["count"] += 1
                return super().__enter__()

            def __exit__(self, type_, value, traceback):
                open_sessions["count"] -= 1
                return super().__exit__(type_, value, traceback)

        class ObservingFetcher(FakeFetcher):
            async def sync(self, account, since=None, report_step=None):
                self.open_during_fetch = open_sessions["count"]
                return await super().sync(account, since, report_step)

        fetcher = ObservingFetcher({"fetch": [metric(value=42)]})
        sync_engine = SyncEngine(
            ConnectorRegistry([fake_definition(fetcher)]),
            vault,
            MetricStore(),
            progress,
            lambda: CountingSession(engine, expire_on_commit=False),
        )
        account = make_account()

        outcome = await sync_engine.sync_account(account.id)

        assert outcome.success
        assert fetcher.open_during_fetch == 0
        assert open_sessions["count"] == 0
        assert [m.value for m in all_metrics(db_session, account.id)] == [42]


class TestConcurrencyGuard:
    @pytest.mark.asyncio
    async def test_second_call_while_running_is_rejected(
        self, sync_engine, fetcher, make_account, db_session
    ):
        account = make_account()
        fetcher.gate = asyncio.Event()

        first = asyncio.create_task(sync_engine.sync_account(account.id))
        await fetcher.entered.wait()

        second = await sync_engine.sync_account(account.id)
        assert not second.success
        assert second.error_kind == SyncErrorKind.ALREADY_RUNNING
        running = [l for l in all_logs(db_session, account.id) if l.status == SyncStatus.RUNNING.value]
        assert len(running) == 1

        fetcher.gate.set()
        outcome = await first
        assert outcome.success
        assert not sync_engine.locks.held(account.id)

    @pytest.mark.asyncio
    async def test_fresh_running_row_blocks_new_attempt(
        self, sync_engine, make_account, session_factory, db_session
    ):
        account = make_account()
        add_log(session_factory, account.id, SyncStatus.RUNNING, utcnow() - timedelta(minutes=2))

        outcome = await sync_engine.sync_account(account.id)

        assert outcome.error_kind == SyncErrorKind.ALREADY_RUNNING
        assert len(all_logs(db_session, account.id)) == 1

    @pytest.mark.asyncio
    async def test_stale_running_row_is_recovered(
        self, sync_engine, make_account, session_factory, db_session
    ):
        account = make_account()
        stale_id = add_log(
            session_factory, account.id, SyncStatus.RUNNING, utcnow() - timedelta(minutes=11)
        )

        outcome = await sync_engine.sync_account(account.id)

        assert outcome.success
        logs = {l.id: l for l in all_logs(db_session, account.id)}
        assert logs[stale_id].status == SyncStatus.ERROR.value
        assert logs[stale_id].error == STALE_SYNC_ERROR
        assert logs[outcome.sync_log_id].status == SyncStatus.SUCCESS.value


class TestCursor:
    @pytest.mark.asyncio
    async def test_no_prior_success_means_no_cursor(self, sync_engine, fetcher, make_account):
        account = make_account()
        await sync_engine.sync_account(account.id)
        assert fetcher.calls[0]["since"] is None

    @pytest.mark.asyncio
    async def test_cursor_is_last_success_completion(
        self, sync_engine, fetcher, make_account, session_factory
    ):
        account = make_account()
        last_success = datetime(2026, 2, 1, tzinfo=timezone.utc)
        add_log(
            session_factory,
            account.id,
            SyncStatus.SUCCESS,
            last_success - timedelta(minutes=5),
            completed_at=last_success,
        )
        add_log(
            session_factory,
            account.id,
            SyncStatus.SUCCESS,
            datetime(2026, 1, 1, tzinfo=timezone.utc),
            completed_at=datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc),
        )
        add_log(
            session_factory,
            account.id,
            SyncStatus.ERROR,
            datetime(2026, 2, 5, tzinfo=timezone.utc),
            completed_at=datetime(2026, 2, 5, 0, 1, tzinfo=timezone.utc),
        )

        await sync_engine.sync_account(account.id)

        assert as_utc(fetcher.calls[0]["since"]) == last_success

    @pytest.mark.asyncio
    async def test_full_sync_drops_cursor(self, sync_engine, fetcher, make_account, session_factory):
        account = make_account()
        add_log(
            session_factory,
            account.id,
            SyncStatus.SUCCESS,
            datetime(2026, 2, 1, tzinfo=timezone.utc),
            completed_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
        )

        await sync_engine.sync_account(account.id, SyncOptions(full_sync=True))

        assert fetcher.calls[0]["since"] is None

    @pytest.mark.asyncio
    async def test_explicit_from_date_wins(self, sync_engine, fetcher, make_account):
        account = make_account()
        start = datetime(2025, 6, 1, tzinfo=timezone.utc)

        await sync_engine.sync_account(account.id, SyncOptions(full_sync=True, from_date=start))

        assert fetcher.calls[0]["since"] == start


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(
        self, vault, progress, session_factory, make_account, db_session
    ):
        good = FakeFetcher({"fetch": [metric()]})
        bad = FakeFetcher()
        bad.raises = RuntimeError("provider down")
        registry = ConnectorRegistry([fake_definition(bad, "bad"), fake_definition(good, "good")])
        engine = SyncEngine(registry, vault, MetricStore(), progress, session_factory)

        failing = make_account(provider_id="bad", label="first")
        working = make_account(provider_id="good", label="second")
        inactive = make_account(provider_id="good", label="off", is_active=False)

        outcomes = await engine.sync_all_accounts()

        by_account = {o.account_id: o for o in outcomes}
        assert set(by_account) == {failing.id, working.id}
        assert not by_account[failing.id].success
        assert by_account[working.id].success
        assert len(all_metrics(db_session, working.id)) == 1
        assert all_logs(db_session, inactive.id) == []


class TestStatusQueries:
    @pytest.mark.asyncio
    async def test_status_and_history(self, sync_engine, make_account):
        account = make_account()
        assert sync_engine.get_account_sync_status(account.id) is None

        first = await sync_engine.sync_account(account.id)
        second = await sync_engine.sync_account(account.id)

        latest = sync_engine.get_account_sync_status(account.id)
        assert latest.id == second.sync_log_id
        logs = sync_engine.list_sync_logs(account.id, limit=10)
        assert [l.id for l in logs] == [second.sync_log_id, first.sync_log_id]
        assert len(sync_engine.list_sync_logs(account.id, limit=1)) == 1
