"""PULSE — Sync Orchestrator.

Per-account state machine: Idle → Running → {Success, Error}.

    1. Preconditions   account exists, is active, provider is registered
    2. Guard           in-process lock, then durable `running` row check
    3. Log + progress  new `running` SyncLog row, fresh progress entry
    4. Cursor          explicit date > full resync > last success
    5. Fetch           decrypted credentials → DataFetcher.sync
    6. Store           metrics → MetricStore (chunked transactions)
    7. Finalize        log row + progress to success / error

Anything raised after step 3 is caught, sanitized and recorded as an
error. `sync_account` never leaves its own log row in `running`.
"""

import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field
from sqlmodel import Session, col, select

from pulse.connectors.base import AccountConfig, IntegrationDefinition, SyncStep
from pulse.connectors.registry import ConnectorRegistry
from pulse.core.clock import as_utc, utcnow
from pulse.core.crypto import CredentialVault
from pulse.core.logging import get_logger
from pulse.core.security import sanitize_error_message
from pulse.database import SessionFactory
from pulse.models.account_models import Account
from pulse.models.sync_models import SyncLog, SyncStatus
from pulse.services.metric_store import MetricStore
from pulse.services.progress import ProgressTracker

logger = get_logger("services.sync_engine")

STALE_SYNC_ERROR = "stale running sync detected"
DEFAULT_STALE_TTL_MINUTES = 10


def _sanitized_step(step: SyncStep) -> SyncStep:
    if not step.error:
        return step
    return step.model_copy(update={"error": sanitize_error_message(step.error)})


class SyncErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    UNKNOWN_PROVIDER = "unknown_provider"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


class SyncOptions(BaseModel):
    """`from_date` always wins; `full_sync` alone drops the cursor."""

    full_sync: bool = False
    from_date: Optional[datetime] = None


class SyncOutcome(BaseModel):
    account_id: str
    success: bool
    records_processed: int = 0
    error: Optional[str] = None
    error_kind: Optional[SyncErrorKind] = None
    steps: List[SyncStep] = Field(default_factory=list)
    sync_log_id: Optional[int] = None

    @classmethod
    def rejected(cls, account_id: str, kind: SyncErrorKind, error: str) -> "SyncOutcome":
        return cls(account_id=account_id, success=False, error=error, error_kind=kind)


class AccountLocks:
    """Process-local set of account ids with a sync in flight."""

    def __init__(self):
        self._held: Set[str] = set()
        self._guard = threading.Lock()

    def acquire(self, account_id: str) -> bool:
        with self._guard:
            if account_id in self._held:
                return False
            self._held.add(account_id)
            return True

    def release(self, account_id: str) -> None:
        with self._guard:
            self._held.discard(account_id)

    def held(self, account_id: str) -> bool:
        with self._guard:
            return account_id in self._held


class SyncEngine:
    def __init__(
        self,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        store: MetricStore,
        progress: ProgressTracker,
        session_factory: SessionFactory,
        stale_ttl_minutes: float = DEFAULT_STALE_TTL_MINUTES,
    ):
        self.registry = registry
        self.vault = vault
        self.store = store
        self.progress = progress
        self.session_factory = session_factory
        self.stale_ttl = timedelta(minutes=stale_ttl_minutes)
        self.locks = AccountLocks()

    # ═══════════════════════════════════════
    # ONE ACCOUNT
    # ═══════════════════════════════════════

    async def sync_account(
        self, account_id: str, options: Optional[SyncOptions] = None
    ) -> SyncOutcome:
        options = options or SyncOptions()

        with self.session_factory() as session:
            account = session.get(Account, account_id)
        if account is None:
            return SyncOutcome.rejected(account_id, SyncErrorKind.NOT_FOUND, "Account not found")
        if not account.is_active:
            return SyncOutcome.rejected(account_id, SyncErrorKind.INACTIVE, "Account is inactive")
        definition = self.registry.find(account.provider_id)
        if definition is None:
            return SyncOutcome.rejected(
                account_id,
                SyncErrorKind.UNKNOWN_PROVIDER,
                f'Integration "{account.provider_id}" not found',
            )

        if not self.locks.acquire(account_id):
            return SyncOutcome.rejected(
                account_id, SyncErrorKind.ALREADY_RUNNING, "Sync already in progress"
            )
        try:
            return await self._run(account, definition, options)
        finally:
            self.locks.release(account_id)

    async def _run(
        self, account: Account, definition: IntegrationDefinition, options: SyncOptions
    ) -> SyncOutcome:
        with self.session_factory() as session:
            if self._has_live_running_row(session, account.id):
                return SyncOutcome.rejected(
                    account.id, SyncErrorKind.ALREADY_RUNNING, "Sync already in progress"
                )

            log = SyncLog(account_id=account.id, status=SyncStatus.RUNNING.value, started_at=utcnow())
            session.add(log)
            session.commit()
            session.refresh(log)
            log_id = log.id

        self.progress.start(account.id)
        logger.info(
            f"Sync started for {account.label} ({definition.id})",
            extra={"account_id": account.id, "sync_log_id": log_id, "provider_id": definition.id},
        )
        t0 = time.monotonic()
        steps: List[SyncStep] = []

        try:
            with self.session_factory() as session:
                since = self._select_cursor(session, account.id, options)

            config = AccountConfig(
                id=account.id,
                provider_id=account.provider_id,
                label=account.label,
                credentials=self.vault.decrypt_credentials(account.encrypted_credentials),
            )

            def report(step: SyncStep) -> None:
                self.progress.append_step(account.id, _sanitized_step(step))

            # No session is held while the provider is being called.
            result = await definition.fetcher.sync(config, since, report)
            steps = [_sanitized_step(step) for step in result.steps]

            if not result.success:
                error = sanitize_error_message(result.error or "Sync failed")
                return self._finish(account.id, log_id, SyncStatus.ERROR, 0, error, steps, t0)

            with self.session_factory() as session:
                await self.store.store_metrics(session, account.id, result.metrics)

            partial = sanitize_error_message(result.error) if result.error else None
            return self._finish(
                account.id, log_id, SyncStatus.SUCCESS, result.records_processed, partial, steps, t0
            )

        except Exception as e:
            error = sanitize_error_message(str(e) or type(e).__name__)
            logger.error(
                f"Sync crashed for {account.id}: {error}",
                extra={"account_id": account.id, "sync_log_id": log_id},
            )
            return self._finish(account.id, log_id, SyncStatus.ERROR, 0, error, steps, t0)

    def _finish(
        self,
        account_id: str,
        log_id: int,
        status: SyncStatus,
        records: int,
        error: Optional[str],
        steps: List[SyncStep],
        t0: float,
    ) -> SyncOutcome:
        """Finalize the log row and the progress entry."""
        try:
            with self.session_factory() as session:
                log = session.get(SyncLog, log_id)
                if log is not None:
                    log.status = status.value
                    log.completed_at = utcnow()
                    log.records_processed = records
                    log.error = error
                    session.add(log)
                    session.commit()
        except Exception as e:
            # The row stays `running` and the staleness TTL recovers it later.
            logger.error(
                f"Could not finalize sync log {log_id}: {sanitize_error_message(str(e))}",
                extra={"account_id": account_id, "sync_log_id": log_id},
            )

        self.progress.finalize(account_id, status, records_processed=records, error=error)
        duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            f"Sync {status.value} for {account_id}",
            extra={
                "account_id": account_id,
                "sync_log_id": log_id,
                "records": records,
                "duration_ms": duration_ms,
            },
        )
        return SyncOutcome(
            account_id=account_id,
            success=status == SyncStatus.SUCCESS,
            records_processed=records,
            error=error,
            error_kind=None if status == SyncStatus.SUCCESS else SyncErrorKind.FAILED,
            steps=steps,
            sync_log_id=log_id,
        )

    # ── Guard & cursor ──

    def _has_live_running_row(self, session: Session, account_id: str) -> bool:
        """Finalize stale `running` rows; report whether a fresh one remains."""
        rows = session.exec(
            select(SyncLog).where(
                SyncLog.account_id == account_id,
                SyncLog.status == SyncStatus.RUNNING.value,
            )
        ).all()

        cutoff = utcnow() - self.stale_ttl
        live = False
        for row in rows:
            if as_utc(row.started_at) < cutoff:
                row.status = SyncStatus.ERROR.value
                row.error = STALE_SYNC_ERROR
                row.completed_at = utcnow()
                session.add(row)
                logger.warning(
                    f"Stale running sync {row.id} finalized",
                    extra={"account_id": account_id, "sync_log_id": row.id},
                )
            else:
                live = True
        session.commit()
        return live

    def _select_cursor(
        self, session: Session, account_id: str, options: SyncOptions
    ) -> Optional[datetime]:
        if options.from_date is not None:
            return as_utc(options.from_date)
        if options.full_sync:
            return None
        last = self.last_successful_sync(session, account_id)
        return as_utc(last.completed_at) if last is not None else None

    @staticmethod
    def last_successful_sync(session: Session, account_id: str) -> Optional[SyncLog]:
        return session.exec(
            select(SyncLog)
            .where(
                SyncLog.account_id == account_id,
                SyncLog.status == SyncStatus.SUCCESS.value,
                col(SyncLog.completed_at).is_not(None),
            )
            .order_by(col(SyncLog.completed_at).desc())
            .limit(1)
        ).first()

    # ═══════════════════════════════════════
    # ALL ACCOUNTS
    # ═══════════════════════════════════════

    async def sync_all_accounts(self, options: Optional[SyncOptions] = None) -> List[SyncOutcome]:
        """Sync every active account, one after another."""
        with self.session_factory() as session:
            account_ids = session.exec(
                select(Account.id).where(Account.is_active == True)  # noqa: E712
                .order_by(col(Account.created_at))
            ).all()

        logger.info(f"Sync-all started for {len(account_ids)} accounts")
        outcomes: List[SyncOutcome] = []
        for account_id in account_ids:
            try:
                outcomes.append(await self.sync_account(account_id, options))
            except Exception as e:
                error = sanitize_error_message(str(e) or type(e).__name__)
                logger.error(f"Sync-all: {account_id} failed: {error}", extra={"account_id": account_id})
                outcomes.append(
                    SyncOutcome.rejected(account_id, SyncErrorKind.FAILED, error)
                )

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(f"Sync-all finished: {succeeded}/{len(outcomes)} succeeded")
        return outcomes

    # ═══════════════════════════════════════
    # STATUS QUERIES
    # ═══════════════════════════════════════

    def get_account_sync_status(self, account_id: str) -> Optional[SyncLog]:
        """Most recent log row by start time."""
        with self.session_factory() as session:
            return session.exec(
                select(SyncLog)
                .where(SyncLog.account_id == account_id)
                .order_by(col(SyncLog.started_at).desc(), col(SyncLog.id).desc())
                .limit(1)
            ).first()

    def list_sync_logs(self, account_id: str, limit: int = 20) -> List[SyncLog]:
        with self.session_factory() as session:
            return list(
                session.exec(
                    select(SyncLog)
                    .where(SyncLog.account_id == account_id)
                    .order_by(col(SyncLog.started_at).desc(), col(SyncLog.id).desc())
                    .limit(limit)
                ).all()
            )
