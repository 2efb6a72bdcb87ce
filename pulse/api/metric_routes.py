"""PULSE — Metric API Routes."""

import json
from collections import defaultdict
from typing import Dict, List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, col, select

from pulse.api.dependencies import get_session
from pulse.connectors.base import PENDING_FLAG
from pulse.core.logging import get_logger
from pulse.core.metric_keys import ALL_METRIC_KEYS, is_snapshot
from pulse.models.metric_models import Metric

logger = get_logger("api.metrics")

router = APIRouter(prefix="/metrics", tags=["Metrics"])


def _row_dict(m: Metric) -> dict:
    metadata = json.loads(m.metadata_json or "{}")
    return {
        "id": m.id,
        "account_id": m.account_id,
        "project_id": m.project_id,
        "metric_type": m.metric_type,
        "value": m.value,
        "currency": m.currency,
        "date": m.date,
        "metadata": metadata,
        "pending": metadata.get(PENDING_FLAG) == "true",
    }


def aggregate_daily(rows: List[Metric]) -> List[dict]:
    """Sum per (date, metric type, currency) across the selected accounts."""
    buckets: Dict[Tuple[str, str, Optional[str]], float] = defaultdict(float)
    for m in rows:
        buckets[(m.date, m.metric_type, m.currency)] += m.value
    return [
        {"date": d, "metric_type": t, "currency": c, "value": round(v, 2)}
        for (d, t, c), v in sorted(buckets.items(), key=lambda kv: (kv[0][0], kv[0][1], kv[0][2] or ""))
    ]


def aggregate_total(rows: List[Metric]) -> List[dict]:
    """One value per (metric type, currency) for the whole range.

    Flow metrics (revenue, counts of events) are summed. Snapshot metrics
    (MRR, active subscriptions) take the value of the latest day.
    """
    daily = aggregate_daily(rows)
    totals: Dict[Tuple[str, Optional[str]], float] = defaultdict(float)
    latest: Dict[Tuple[str, Optional[str]], str] = {}
    for row in daily:
        key = (row["metric_type"], row["currency"])
        if is_snapshot(row["metric_type"]):
            if row["date"] >= latest.get(key, ""):
                latest[key] = row["date"]
                totals[key] = row["value"]
        else:
            totals[key] += row["value"]
    return [
        {"metric_type": t, "currency": c, "value": round(v, 2)}
        for (t, c), v in sorted(totals.items(), key=lambda kv: (kv[0][0], kv[0][1] or ""))
    ]


@router.get("/keys")
async def list_metric_keys():
    """The canonical metric vocabulary shared by every provider."""
    return {"status": "success", "keys": [k.to_dict() for k in ALL_METRIC_KEYS.values()]}


@router.get("")
async def query_metrics(
    account_id: List[str] = Query(default=[]),
    metric_type: List[str] = Query(default=[]),
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    project_id: Optional[str] = Query(None, description="Omit for account-level rows"),
    aggregation: Literal["none", "daily", "total"] = "none",
    limit: int = Query(1000, ge=1, le=10000),
    session: Session = Depends(get_session),
):
    """Query stored metrics.

    Without `project_id` only account-level rows are returned, so per-project
    breakdowns are not double counted in aggregates.
    """
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    query = select(Metric)
    if account_id:
        query = query.where(col(Metric.account_id).in_(account_id))
    if metric_type:
        query = query.where(col(Metric.metric_type).in_(metric_type))
    if start_date:
        query = query.where(Metric.date >= start_date)
    if end_date:
        query = query.where(Metric.date <= end_date)
    if project_id:
        query = query.where(Metric.project_id == project_id)
    else:
        query = query.where(col(Metric.project_id).is_(None))

    rows = list(session.exec(query.order_by(col(Metric.date), col(Metric.id)).limit(limit)).all())

    if aggregation == "daily":
        data = aggregate_daily(rows)
    elif aggregation == "total":
        data = aggregate_total(rows)
    else:
        data = [_row_dict(m) for m in rows]

    return {"status": "success", "aggregation": aggregation, "count": len(data), "metrics": data}
