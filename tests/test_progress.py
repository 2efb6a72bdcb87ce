"""Tests for the in-memory progress tracker."""

import pytest

from pulse.connectors.base import SyncStep, SyncStepStatus
from pulse.models.sync_models import SyncStatus
from pulse.services.progress import ProgressTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return ProgressTracker(idle_seconds=600, clock=clock)


def step(key: str, status=SyncStepStatus.RUNNING, **kwargs) -> SyncStep:
    return SyncStep(key=key, label=key.title(), status=status, **kwargs)


class TestProgressTracker:
    def test_start_creates_running_entry(self, tracker):
        tracker.start("acc")
        entry = tracker.get("acc")
        assert entry.status == SyncStatus.RUNNING
        assert entry.steps == []
        assert entry.completed_at is None

    def test_step_with_same_key_is_replaced_in_place(self, tracker):
        tracker.start("acc")
        tracker.append_step("acc", step("charges"))
        tracker.append_step("acc", step("customers"))
        tracker.append_step("acc", step("charges", SyncStepStatus.SUCCESS, record_count=4))

        steps = tracker.get("acc").steps
        assert [s.key for s in steps] == ["charges", "customers"]
        assert steps[0].status == SyncStepStatus.SUCCESS
        assert steps[0].record_count == 4

    def test_update_step_patches_fields(self, tracker):
        tracker.start("acc")
        tracker.append_step("acc", step("charges"))
        tracker.update_step("acc", "charges", status=SyncStepStatus.ERROR, error="boom")

        (only,) = tracker.get("acc").steps
        assert only.status == SyncStepStatus.ERROR
        assert only.error == "boom"

    def test_finalize_sets_terminal_state(self, tracker):
        tracker.start("acc")
        tracker.finalize("acc", SyncStatus.SUCCESS, records_processed=12)

        entry = tracker.get("acc")
        assert entry.status == SyncStatus.SUCCESS
        assert entry.records_processed == 12
        assert entry.completed_at is not None

    def test_get_returns_a_snapshot(self, tracker):
        tracker.start("acc")
        snapshot = tracker.get("acc")
        snapshot.steps.append(step("mutated"))
        assert tracker.get("acc").steps == []

    def test_unknown_account_is_a_no_op(self, tracker):
        tracker.append_step("ghost", step("x"))
        tracker.finalize("ghost", SyncStatus.ERROR)
        assert tracker.get("ghost") is None


class TestIdleExpiry:
    def test_entry_expires_when_untouched(self, tracker, clock):
        tracker.start("acc")
        clock.advance(601)
        assert tracker.get("acc") is None

    def test_every_mutation_resets_the_timer(self, tracker, clock):
        tracker.start("acc")
        clock.advance(500)
        tracker.append_step("acc", step("charges"))
        clock.advance(500)
        tracker.finalize("acc", SyncStatus.SUCCESS)
        clock.advance(500)

        assert tracker.get("acc") is not None

    def test_sweep_removes_only_expired_entries(self, tracker, clock):
        tracker.start("old")
        clock.advance(400)
        tracker.start("new")
        clock.advance(300)

        assert tracker.sweep() == 1
        assert tracker.get("old") is None
        assert tracker.get("new") is not None
        assert len(tracker) == 1
