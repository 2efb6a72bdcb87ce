"""PULSE — Phase runner shared by provider adapters.

Runs logically independent fetch phases one after another, reports each
one through the step callback and folds the outcomes into a SyncResult
with the contract's partial / total failure semantics.
"""

import time
from typing import Awaitable, Callable, List, Optional, Tuple

from pulse.connectors.base import (
    NormalizedMetric,
    StepReporter,
    SyncResult,
    SyncStep,
    SyncStepStatus,
)
from pulse.core.logging import get_logger
from pulse.core.security import sanitize_error_message

logger = get_logger("connectors.steps")

# A phase returns (records fetched, metrics produced).
Phase = Callable[[], Awaitable[Tuple[int, List[NormalizedMetric]]]]


class PhaseRunner:
    def __init__(self, report_step: Optional[StepReporter] = None):
        self._report = report_step
        self.steps: List[SyncStep] = []
        self.metrics: List[NormalizedMetric] = []
        self.records = 0

    def _emit(self, step: SyncStep) -> None:
        if step.status != SyncStepStatus.RUNNING:
            self.steps.append(step)
        if self._report is not None:
            self._report(step)

    async def run(self, key: str, label: str, phase: Phase) -> bool:
        """Run one phase. Returns True if it succeeded."""
        self._emit(SyncStep(key=key, label=label, status=SyncStepStatus.RUNNING))
        t0 = time.monotonic()
        try:
            records, metrics = await phase()
        except Exception as e:
            duration_ms = int((time.monotonic() - t0) * 1000)
            error = sanitize_error_message(str(e))
            logger.warning(
                f"Phase {key} failed: {error}", extra={"step": key, "duration_ms": duration_ms}
            )
            self._emit(
                SyncStep(
                    key=key,
                    label=label,
                    status=SyncStepStatus.ERROR,
                    duration_ms=duration_ms,
                    error=error or f"Failed: {label}",
                )
            )
            return False

        duration_ms = int((time.monotonic() - t0) * 1000)
        self.records += records
        self.metrics.extend(metrics)
        self._emit(
            SyncStep(
                key=key,
                label=label,
                status=SyncStepStatus.SUCCESS,
                record_count=records,
                duration_ms=duration_ms,
            )
        )
        return True

    def add_metrics(self, metrics: List[NormalizedMetric]) -> None:
        """Attach metrics derived from earlier phases."""
        self.metrics.extend(metrics)

    def skip(self, key: str, label: str, reason: str = "") -> None:
        self._emit(
            SyncStep(key=key, label=label, status=SyncStepStatus.SKIPPED, error=reason or None)
        )

    def result(self) -> SyncResult:
        attempted = [s for s in self.steps if s.status != SyncStepStatus.SKIPPED]
        failed = [s for s in attempted if s.status == SyncStepStatus.ERROR]

        if attempted and len(failed) == len(attempted):
            return SyncResult(
                success=False,
                records_processed=0,
                metrics=[],
                steps=self.steps,
                error="All sync steps failed",
            )

        error = None
        if failed:
            error = "Some sync steps failed: " + ", ".join(s.label for s in failed)
        return SyncResult(
            success=True,
            records_processed=self.records,
            metrics=self.metrics,
            steps=self.steps,
            error=error,
        )
