"""PULSE — RevenueCat Chart → Normalized Transformer.

Chart values come in three shapes depending on the chart generation:
`[timestamp, value, ...]` rows, `{x, y}` points and realtime
`{cohort, value, measure, incomplete}` points. Timestamps are seconds
or milliseconds.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pulse.connectors.base import NormalizedMetric

# RevenueCat chart name → canonical metric key
CHART_METRICS = {
    "mrr": "mrr",
    "revenue": "revenue",
    "actives": "active_subscriptions",
    "trials": "active_trials",
    "customers_new": "new_customers",
    "customers_active": "active_users",
}

# Point-in-time values: the latest one still holds today.
STOCK_METRICS = frozenset({"mrr", "active_subscriptions", "active_trials", "active_users"})

# Tried in order on the revenue chart to split subscription vs one-time.
REVENUE_SEGMENT_CANDIDATES = ("product_duration_type", "product_type", "store_product_type")

SUBSCRIPTION_SEGMENT_IDS = frozenset(
    {"subscription", "non_renewing_subscription", "auto_renewable", "auto_renewable_subscription"}
)

_MS_THRESHOLD = 1_000_000_000_000
_EARLIEST = date(2000, 1, 1)


def _to_date(ts: float) -> date:
    seconds = ts / 1000 if ts >= _MS_THRESHOLD else ts
    return datetime.fromtimestamp(seconds, tz=timezone.utc).date()


def _days(start: date, end: date) -> Iterator[str]:
    day = start
    while day <= end:
        yield day.isoformat()
        day += timedelta(days=1)


def _points(values: List[Any]) -> Iterator[Tuple[float, Optional[float], bool]]:
    """Yield (timestamp, value, incomplete) for the primary measure."""
    for point in values:
        if isinstance(point, (list, tuple)):
            if len(point) >= 2:
                yield point[0], point[1], False
        elif isinstance(point, dict) and "cohort" in point:
            if point.get("measure", 0) != 0:
                continue
            yield point["cohort"], point.get("value"), point.get("incomplete") is True
        elif isinstance(point, dict):
            yield point.get("x"), point.get("y"), False


def chart_to_metrics(
    chart: Dict[str, Any], metric_type: str, start: date, end: date
) -> List[NormalizedMetric]:
    """One row per day for an unsegmented chart."""
    currency = chart.get("yaxis_currency")
    latest_allowed = end + timedelta(days=1)
    by_date: Dict[str, NormalizedMetric] = {}

    for ts, value, incomplete in _points(chart.get("values") or []):
        if ts is None or value is None:
            continue
        # An unfinished realtime zero means "not computed yet".
        if incomplete and value == 0 and metric_type not in STOCK_METRICS:
            continue
        day = _to_date(ts)
        if day < _EARLIEST or day > latest_allowed:
            continue
        key = day.isoformat()
        by_date[key] = NormalizedMetric(metric_type=metric_type, value=value, currency=currency, date=key)

    if metric_type == "revenue":
        for key in _days(start, end):
            by_date.setdefault(
                key, NormalizedMetric(metric_type=metric_type, value=0, currency=currency, date=key)
            )

    return [by_date[k] for k in sorted(by_date)]


def segmented_revenue_to_metrics(
    chart: Dict[str, Any], start: date, end: date
) -> List[NormalizedMetric]:
    """Split a segmented revenue chart into subscription and one-time revenue."""
    segments = chart.get("segments") or []
    values = chart.get("values") or []
    if not segments or not values:
        return []

    currency = chart.get("yaxis_currency")
    is_subscription = [str(s.get("id", "")).lower() in SUBSCRIPTION_SEGMENT_IDS for s in segments]
    totals: Dict[str, List[float]] = {}

    for row in values:
        if not isinstance(row, (list, tuple)) or not row or row[0] is None:
            continue
        key = _to_date(row[0]).isoformat()
        subscription, one_time = 0.0, 0.0
        for i, cell in enumerate(row[1 : len(segments) + 1]):
            if cell is None:
                continue
            if is_subscription[i]:
                subscription += cell
            else:
                one_time += cell
        totals[key] = [subscription, one_time]

    for key in _days(start, end):
        totals.setdefault(key, [0.0, 0.0])

    metrics: List[NormalizedMetric] = []
    for metric_type, idx in (("subscription_revenue", 0), ("one_time_revenue", 1)):
        for key in sorted(totals):
            metrics.append(
                NormalizedMetric(metric_type=metric_type, value=totals[key][idx], currency=currency, date=key)
            )
    return metrics


def carry_forward(metrics: List[NormalizedMetric], today: str) -> List[NormalizedMetric]:
    """Copies of the latest stock values dated today, where today is missing."""
    latest: Dict[str, NormalizedMetric] = {}
    for m in metrics:
        if m.metric_type not in STOCK_METRICS:
            continue
        current = latest.get(m.metric_type)
        if current is None or m.date > current.date:
            latest[m.metric_type] = m

    return [
        m.model_copy(update={"date": today})
        for m in latest.values()
        if m.date < today
    ]


def pick_revenue_segment(options: Dict[str, Any]) -> Optional[str]:
    available = {str(s.get("id", "")).lower() for s in options.get("segments") or []}
    for candidate in REVENUE_SEGMENT_CANDIDATES:
        if candidate in available:
            return candidate
    return None
