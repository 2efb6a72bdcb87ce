"""PULSE — Gumroad Raw → Normalized Transformer."""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

from pulse.connectors.base import NormalizedMetric

ACTIVE_SUBSCRIBER_STATUSES = {"alive", "pending_cancellation"}


def _day(iso: str) -> str:
    parsed = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d")


def is_membership(product: Dict[str, Any]) -> bool:
    return bool(product.get("is_tiered_membership") or product.get("subscription_duration"))


def products_to_metrics(products: List[Dict[str, Any]], today: str) -> List[NormalizedMetric]:
    published = [p for p in products if p.get("published") and not p.get("deleted")]
    return [NormalizedMetric(metric_type="products_count", value=len(published), date=today)]


def sales_to_metrics(sales: List[Dict[str, Any]], currency: str = "USD") -> List[NormalizedMetric]:
    """Daily revenue and sale counts, per account and per product.

    Fully refunded and charged-back sales are excluded. Per-product rows
    carry the product name so the store can label auto-created projects.
    """
    totals: Dict[str, Dict[str, float]] = defaultdict(lambda: {"revenue": 0.0, "count": 0})
    per_product: Dict[tuple, Dict[str, float]] = defaultdict(lambda: {"revenue": 0.0, "count": 0})
    names: Dict[str, str] = {}

    for sale in sales:
        if sale.get("refunded") or sale.get("chargedback"):
            continue
        date = _day(sale["created_at"])
        amount = float(sale.get("price") or 0) / 100
        totals[date]["revenue"] += amount
        totals[date]["count"] += 1

        product_id = sale.get("product_id")
        if product_id:
            per_product[(date, product_id)]["revenue"] += amount
            per_product[(date, product_id)]["count"] += 1
            names[product_id] = sale.get("product_name") or product_id

    metrics: List[NormalizedMetric] = []
    for date, bucket in sorted(totals.items()):
        metrics.append(
            NormalizedMetric(metric_type="revenue", value=round(bucket["revenue"], 2), currency=currency, date=date)
        )
        metrics.append(NormalizedMetric(metric_type="sales_count", value=bucket["count"], date=date))

    for (date, product_id), bucket in sorted(per_product.items()):
        meta = {"product_name": names[product_id]}
        metrics.append(
            NormalizedMetric(
                metric_type="revenue",
                value=round(bucket["revenue"], 2),
                currency=currency,
                date=date,
                project_id=product_id,
                metadata=meta,
            )
        )
        metrics.append(
            NormalizedMetric(
                metric_type="sales_count",
                value=bucket["count"],
                date=date,
                project_id=product_id,
                metadata=meta,
            )
        )
    return metrics


def subscribers_to_metrics(
    subscribers_by_product: Dict[str, List[Dict[str, Any]]],
    names: Dict[str, str],
    today: str,
) -> List[NormalizedMetric]:
    """Active subscriber counts for today, per product and in total."""
    metrics: List[NormalizedMetric] = []
    total = 0
    for product_id, subscribers in sorted(subscribers_by_product.items()):
        active = sum(1 for s in subscribers if s.get("status") in ACTIVE_SUBSCRIBER_STATUSES)
        total += active
        metrics.append(
            NormalizedMetric(
                metric_type="active_subscribers",
                value=active,
                date=today,
                project_id=product_id,
                metadata={"product_name": names.get(product_id, product_id)},
            )
        )
    metrics.insert(0, NormalizedMetric(metric_type="active_subscribers", value=total, date=today))
    return metrics
