"""PULSE — Normalized Metric Model (Universal Schema).

Every connector normalizes into this table. The identity key is
(account_id, metric_type, date, project_id, metadata_key); the metric
store guarantees at most one row per key.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import Index
from sqlmodel import SQLModel, Field

from pulse.core.clock import utcnow


class Metric(SQLModel, table=True):
    """One stored observation."""

    __tablename__ = "metrics"
    __table_args__ = (
        Index(
            "ix_metrics_identity",
            "account_id",
            "metric_type",
            "date",
            "project_id",
            "metadata_key",
        ),
        Index("ix_metrics_account_date", "account_id", "date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, ondelete="CASCADE")
    project_id: Optional[str] = Field(default=None, index=True)
    metric_type: str = Field(index=True, description="Canonical metric key")
    value: float = Field(description="Numeric value")
    currency: Optional[str] = Field(default=None, description="ISO currency for monetary metrics")
    date: str = Field(index=True, description="YYYY-MM-DD")
    metadata_json: str = Field(default="{}", description="Full metadata as stored")
    metadata_key: str = Field(
        default="{}", description="Canonical metadata used for identity (pending flag removed)"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
