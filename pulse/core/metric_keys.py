"""PULSE — Canonical Metric Keys.

The cross-provider metric vocabulary. Every connector produces normalized
metrics using these keys so revenue from Stripe and Gumroad lands in the
same time series.
"""

from enum import Enum
from typing import Dict


class MetricFormat(str, Enum):
    """How a metric value should be rendered."""

    CURRENCY = "currency"
    NUMBER = "number"
    PERCENTAGE = "percentage"


class MetricKeyDefinition:
    """Describes a single canonical metric key."""

    def __init__(self, key: str, label: str, fmt: MetricFormat, description: str = ""):
        self.key = key
        self.label = label
        self.format = fmt
        self.description = description

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "format": self.format.value,
            "description": self.description,
        }

    def __repr__(self) -> str:
        return f"<MetricKey {self.key} ({self.format.value})>"


def _k(key: str, label: str, fmt: MetricFormat, description: str) -> MetricKeyDefinition:
    return MetricKeyDefinition(key, label, fmt, description)


# ─────────────────────────────────────────────
# REVENUE
# ─────────────────────────────────────────────

REVENUE_KEYS: Dict[str, MetricKeyDefinition] = {
    "revenue": _k("revenue", "Revenue", MetricFormat.CURRENCY, "Total revenue from all sources"),
    "subscription_revenue": _k(
        "subscription_revenue",
        "Subscription Revenue",
        MetricFormat.CURRENCY,
        "Revenue from recurring subscriptions",
    ),
    "one_time_revenue": _k(
        "one_time_revenue", "One-Time Revenue", MetricFormat.CURRENCY, "Revenue from one-time purchases"
    ),
    "mrr": _k("mrr", "MRR", MetricFormat.CURRENCY, "Monthly Recurring Revenue"),
    "refunds": _k("refunds", "Refunds", MetricFormat.CURRENCY, "Total refund amount"),
    "platform_fees": _k(
        "platform_fees", "Platform Fees", MetricFormat.CURRENCY, "Processing fees charged by the platform"
    ),
}


# ─────────────────────────────────────────────
# COUNTS
# ─────────────────────────────────────────────

COUNT_KEYS: Dict[str, MetricKeyDefinition] = {
    "active_subscriptions": _k(
        "active_subscriptions",
        "Active Subscriptions",
        MetricFormat.NUMBER,
        "Number of active subscriptions",
    ),
    "active_subscribers": _k(
        "active_subscribers", "Active Subscribers", MetricFormat.NUMBER, "Number of active subscribers"
    ),
    "active_trials": _k("active_trials", "Active Trials", MetricFormat.NUMBER, "Number of active trials"),
    "new_customers": _k("new_customers", "New Customers", MetricFormat.NUMBER, "Number of new customers"),
    "active_users": _k("active_users", "Active Users", MetricFormat.NUMBER, "Number of active customers"),
    "sales_count": _k("sales_count", "Sales", MetricFormat.NUMBER, "Number of completed sales"),
    "charges_count": _k("charges_count", "Charges", MetricFormat.NUMBER, "Number of successful charges"),
    "products_count": _k("products_count", "Products", MetricFormat.NUMBER, "Number of published products"),
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ALL_METRIC_KEYS: Dict[str, MetricKeyDefinition] = {**REVENUE_KEYS, **COUNT_KEYS}


def get_metric_key(key: str) -> MetricKeyDefinition | None:
    """Look up a canonical metric key."""
    return ALL_METRIC_KEYS.get(key)


def keys_by_format(fmt: MetricFormat) -> list[MetricKeyDefinition]:
    """Return all metric keys rendered with the given format."""
    return [m for m in ALL_METRIC_KEYS.values() if m.format == fmt]


# Point-in-time values: totals over a range take the latest day, not the sum.
SNAPSHOT_KEYS = frozenset(
    {"mrr", "active_subscriptions", "active_subscribers", "active_trials", "active_users", "products_count"}
)


def is_snapshot(key: str) -> bool:
    return key in SNAPSHOT_KEYS
