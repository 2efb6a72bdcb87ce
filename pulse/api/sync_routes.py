"""PULSE — Sync API Routes."""

from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from pulse.api.dependencies import get_services
from pulse.core.clock import as_utc
from pulse.core.logging import get_logger
from pulse.models.sync_models import SyncLog
from pulse.services.account_service import AccountNotFoundError
from pulse.services.container import Services
from pulse.services.cooldown import ALL_ACCOUNTS
from pulse.services.sync_engine import SyncErrorKind, SyncOptions

logger = get_logger("api.sync")

router = APIRouter(prefix="/sync", tags=["Sync"])

ERROR_STATUS = {
    SyncErrorKind.NOT_FOUND: 404,
    SyncErrorKind.INACTIVE: 409,
    SyncErrorKind.ALREADY_RUNNING: 409,
    SyncErrorKind.UNKNOWN_PROVIDER: 400,
}


# ── Request Models ──


class SyncRequest(BaseModel):
    """Body for POST /sync. Omit `account_id` to sync every active account."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: Optional[str] = None
    full_sync: bool = False
    """Ignore the incremental cursor and use the provider's default window."""
    from_date: Optional[date] = Field(default=None, alias="from")
    """Explicit start date (YYYY-MM-DD). Wins over `full_sync`."""

    def options(self) -> SyncOptions:
        from_dt = None
        if self.from_date is not None:
            from_dt = datetime.combine(self.from_date, time.min, tzinfo=timezone.utc)
        return SyncOptions(full_sync=self.full_sync, from_date=from_dt)


def _log_dict(log: SyncLog) -> dict:
    return {
        "id": log.id,
        "status": log.status,
        "started_at": as_utc(log.started_at).isoformat(),
        "completed_at": as_utc(log.completed_at).isoformat() if log.completed_at else None,
        "error": log.error,
        "records_processed": log.records_processed,
    }


def _require_account(services: Services, account_id: str) -> None:
    try:
        services.accounts.get_account(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _cooldown(services: Services, key: str) -> None:
    if not services.cooldown.try_acquire(key):
        wait = int(services.cooldown.remaining(key)) + 1
        raise HTTPException(
            status_code=429,
            detail=f"Sync was triggered recently. Try again in {wait}s.",
            headers={"Retry-After": str(wait)},
        )


# ── Endpoints ──


@router.post("")
async def trigger_sync(request: SyncRequest, services: Services = Depends(get_services)):
    """Run a sync now, for one account or for all active accounts."""
    options = request.options()

    if request.account_id:
        _cooldown(services, request.account_id)
        outcome = await services.sync_engine.sync_account(request.account_id, options)
        if outcome.error_kind in ERROR_STATUS:
            raise HTTPException(status_code=ERROR_STATUS[outcome.error_kind], detail=outcome.error)
        return {
            "status": "success" if outcome.success else "error",
            "result": outcome.model_dump(mode="json"),
        }

    _cooldown(services, ALL_ACCOUNTS)
    outcomes = await services.sync_engine.sync_all_accounts(options)
    return {
        "status": "success",
        "count": len(outcomes),
        "succeeded": sum(1 for o in outcomes if o.success),
        "results": [o.model_dump(mode="json") for o in outcomes],
    }


@router.get("/{account_id}/status")
async def get_sync_status(account_id: str, services: Services = Depends(get_services)):
    """Latest sync attempt for an account."""
    _require_account(services, account_id)
    log = services.sync_engine.get_account_sync_status(account_id)
    if log is None:
        return {"status": "never_synced", "account_id": account_id, "last_sync": None}
    return {"status": "success", "account_id": account_id, "last_sync": _log_dict(log)}


@router.get("/{account_id}/progress")
async def get_sync_progress(account_id: str, services: Services = Depends(get_services)):
    """Live step-by-step progress, kept in memory for a short while after a sync."""
    progress = services.progress.get(account_id)
    if progress is None:
        return {"status": "idle", "account_id": account_id, "progress": None}
    return {"status": "success", "account_id": account_id, "progress": progress.model_dump(mode="json")}


@router.get("/{account_id}/logs")
async def list_sync_logs(
    account_id: str,
    limit: int = Query(20, ge=1, le=200),
    services: Services = Depends(get_services),
):
    _require_account(services, account_id)
    logs = services.sync_engine.list_sync_logs(account_id, limit=limit)
    return {"status": "success", "count": len(logs), "logs": [_log_dict(log) for log in logs]}
