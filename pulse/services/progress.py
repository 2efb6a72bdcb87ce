"""PULSE — Live Sync Progress Tracker.

A process-local map from account id to the progress of its current (or
most recent) sync, for polling clients. Display aid only: the durable
record is the SyncLog table, and losing this map must change nothing else.

Entries expire after an idle window. Every mutation pushes the expiry
forward; expired entries disappear on read or on `sweep()`.
"""

import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from pulse.connectors.base import SyncStep
from pulse.core.clock import utcnow
from pulse.core.logging import get_logger
from pulse.models.sync_models import SyncStatus

logger = get_logger("services.progress")

DEFAULT_IDLE_SECONDS = 600


class SyncProgress(BaseModel):
    account_id: str
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    records_processed: int = 0
    steps: List[SyncStep] = Field(default_factory=list)


class ProgressTracker:
    def __init__(
        self,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._entries: Dict[str, SyncProgress] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _touch(self, account_id: str) -> None:
        self._expires[account_id] = self._clock() + self.idle_seconds

    def _live(self, account_id: str) -> Optional[SyncProgress]:
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        if self._clock() >= self._expires.get(account_id, 0):
            self._entries.pop(account_id, None)
            self._expires.pop(account_id, None)
            return None
        return entry

    # ── Mutations ──

    def start(self, account_id: str) -> SyncProgress:
        with self._lock:
            entry = SyncProgress(account_id=account_id)
            self._entries[account_id] = entry
            self._touch(account_id)
            return entry

    def append_step(self, account_id: str, step: SyncStep) -> None:
        """Add a step, or replace the step with the same key in place."""
        with self._lock:
            entry = self._live(account_id)
            if entry is None:
                return
            for i, existing in enumerate(entry.steps):
                if existing.key == step.key:
                    entry.steps[i] = step
                    break
            else:
                entry.steps.append(step)
            self._touch(account_id)

    def update_step(self, account_id: str, key: str, **changes) -> None:
        """Patch fields of an existing step; unknown keys are ignored."""
        with self._lock:
            entry = self._live(account_id)
            if entry is None:
                return
            for i, existing in enumerate(entry.steps):
                if existing.key == key:
                    entry.steps[i] = existing.model_copy(update=changes)
                    self._touch(account_id)
                    return

    def finalize(
        self,
        account_id: str,
        status: SyncStatus,
        records_processed: int = 0,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            entry = self._live(account_id)
            if entry is None:
                return
            entry.status = status
            entry.completed_at = utcnow()
            entry.records_processed = records_processed
            entry.error = error
            self._touch(account_id)

    # ── Reads ──

    def get(self, account_id: str) -> Optional[SyncProgress]:
        """Snapshot of the current entry, or None."""
        with self._lock:
            entry = self._live(account_id)
            return entry.model_copy(deep=True) if entry is not None else None

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [aid for aid, at in self._expires.items() if now >= at]
            for account_id in expired:
                self._entries.pop(account_id, None)
                self._expires.pop(account_id, None)
        if expired:
            logger.debug(f"Swept {len(expired)} idle progress entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
