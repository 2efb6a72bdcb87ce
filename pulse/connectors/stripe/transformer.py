"""PULSE — Stripe Raw → Normalized Transformer.

Pure functions turning Stripe objects into NormalizedMetric rows.
Stripe amounts are integer minor units (cents).
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from pulse.connectors.base import NormalizedMetric

# Monthly multipliers per recurring interval
MRR_INTERVAL_FACTORS = {
    "month": 1.0,
    "year": 1 / 12,
    "week": 4.33,
    "day": 30.0,
}


def _day(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def _money(cents: Any) -> float:
    try:
        return float(cents or 0) / 100
    except (TypeError, ValueError):
        return 0.0


def charges_to_metrics(charges: List[Dict[str, Any]]) -> List[NormalizedMetric]:
    """Daily revenue, charge counts and refunds from succeeded charges.

    Money is bucketed per (day, currency) and never summed across
    currencies. The currency also goes into metadata so rows for the same
    day in different currencies keep distinct identity keys.
    """
    money: Dict[Tuple[str, str], Dict[str, float]] = defaultdict(
        lambda: {"revenue": 0.0, "subscription": 0.0, "one_time": 0.0, "refunds": 0.0}
    )
    counts: Dict[str, int] = defaultdict(int)

    for charge in charges:
        if charge.get("status") != "succeeded":
            continue
        date = _day(charge["created"])
        currency = (charge.get("currency") or "usd").upper()
        bucket = money[(date, currency)]
        amount = _money(charge.get("amount"))
        bucket["revenue"] += amount
        if charge.get("invoice"):
            bucket["subscription"] += amount
        else:
            bucket["one_time"] += amount
        bucket["refunds"] += _money(charge.get("amount_refunded"))
        counts[date] += 1

    metrics: List[NormalizedMetric] = []
    for (date, currency), bucket in sorted(money.items()):
        for metric_type, field in (
            ("revenue", "revenue"),
            ("subscription_revenue", "subscription"),
            ("one_time_revenue", "one_time"),
        ):
            metrics.append(
                NormalizedMetric(
                    metric_type=metric_type,
                    value=round(bucket[field], 2),
                    currency=currency,
                    date=date,
                    metadata={"currency": currency},
                )
            )
        if bucket["refunds"] > 0:
            metrics.append(
                NormalizedMetric(
                    metric_type="refunds",
                    value=round(bucket["refunds"], 2),
                    currency=currency,
                    date=date,
                    metadata={"currency": currency},
                )
            )

    for date, count in sorted(counts.items()):
        metrics.append(NormalizedMetric(metric_type="charges_count", value=count, date=date))
        metrics.append(NormalizedMetric(metric_type="sales_count", value=count, date=date))
    return metrics


def subscriptions_to_metrics(subscriptions: List[Dict[str, Any]], today: str) -> List[NormalizedMetric]:
    """MRR and active subscription count as of today."""
    total_mrr = 0.0
    currency = "USD"

    for sub in subscriptions:
        items = (sub.get("items") or {}).get("data") or []
        for item in items:
            price = item.get("price") or {}
            recurring = price.get("recurring") or {}
            interval = recurring.get("interval")
            if price.get("unit_amount") is None or interval not in MRR_INTERVAL_FACTORS:
                continue
            interval_count = recurring.get("interval_count") or 1
            quantity = item.get("quantity") or 1
            amount = _money(price["unit_amount"]) * quantity
            total_mrr += amount * MRR_INTERVAL_FACTORS[interval] / interval_count
            currency = (price.get("currency") or "usd").upper()

    return [
        NormalizedMetric(metric_type="mrr", value=round(total_mrr, 2), currency=currency, date=today),
        NormalizedMetric(metric_type="active_subscriptions", value=len(subscriptions), date=today),
    ]


def customers_to_metrics(customers: List[Dict[str, Any]]) -> List[NormalizedMetric]:
    """Daily new-customer counts."""
    daily: Dict[str, int] = defaultdict(int)
    for customer in customers:
        daily[_day(customer["created"])] += 1
    return [
        NormalizedMetric(metric_type="new_customers", value=count, date=date)
        for date, count in sorted(daily.items())
    ]
