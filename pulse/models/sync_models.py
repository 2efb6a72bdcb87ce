"""PULSE — Sync Log Model (append-only)."""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import Index
from sqlmodel import SQLModel, Field

from pulse.core.clock import utcnow


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SyncLog(SQLModel, table=True):
    """One orchestration attempt for one account.

    At most one row per account is `running` at a time, unless an older one
    has outlived the staleness TTL and is about to be finalized to `error`.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (Index("ix_sync_logs_account_status", "account_id", "status", "started_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, ondelete="CASCADE")
    status: str = Field(default=SyncStatus.RUNNING.value, description="running | success | error")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = Field(default=None, description="Sanitized error text")
    records_processed: int = Field(default=0)
