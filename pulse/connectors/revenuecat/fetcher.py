"""PULSE — RevenueCat Data Fetcher.

Pulls daily charts from the Charts API. Revenue is split into
subscription and one-time revenue only when the project exposes a
product-type segment on the revenue chart; otherwise the split is not
emitted at all.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import httpx

from pulse.connectors.base import (
    AccountConfig,
    CredentialField,
    DataFetcher,
    IntegrationDefinition,
    RequiredPermission,
    StepReporter,
    SyncResult,
)
from pulse.connectors.http import ProviderAPIError
from pulse.connectors.revenuecat.client import (
    DEFAULT_RATE_LIMIT_WAIT,
    MIN_REQUEST_INTERVAL,
    RevenueCatClient,
)
from pulse.connectors.revenuecat.transformer import (
    CHART_METRICS,
    carry_forward,
    chart_to_metrics,
    pick_revenue_segment,
    segmented_revenue_to_metrics,
)
from pulse.connectors.steps import PhaseRunner
from pulse.core.logging import get_logger

logger = get_logger("revenuecat.fetcher")

REVENUECAT_ID = "revenuecat"
MISSING_CREDENTIALS = "Missing required credentials: secret_api_key and project_id"


class RevenueCatFetcher(DataFetcher):
    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 4,
        lookback_days: int = 90,
        retry_base_delay: float = 2,
        min_request_interval: float = MIN_REQUEST_INTERVAL,
        rate_limit_wait: float = DEFAULT_RATE_LIMIT_WAIT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.lookback_days = lookback_days
        self.retry_base_delay = retry_base_delay
        self.min_request_interval = min_request_interval
        self.rate_limit_wait = rate_limit_wait
        self.transport = transport

    def _client(self, credentials: Dict[str, str]) -> RevenueCatClient:
        return RevenueCatClient(
            credentials["secret_api_key"],
            credentials["project_id"],
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            min_request_interval=self.min_request_interval,
            rate_limit_wait=self.rate_limit_wait,
            transport=self.transport,
        )

    async def _revenue_segment(self, client: RevenueCatClient) -> Optional[str]:
        try:
            return pick_revenue_segment(await client.get_chart_options("revenue"))
        except ProviderAPIError as e:
            logger.info(f"RevenueCat chart options unavailable: status {e.status_code}")
            return None

    async def sync(
        self,
        account: AccountConfig,
        since: Optional[datetime] = None,
        report_step: Optional[StepReporter] = None,
    ) -> SyncResult:
        creds = account.credentials
        if not creds.get("secret_api_key") or not creds.get("project_id"):
            return SyncResult(success=False, error=MISSING_CREDENTIALS)

        now = datetime.now(timezone.utc)
        end = now.date()
        start = since.date() if since is not None else end - timedelta(days=self.lookback_days)
        today = end.isoformat()
        runner = PhaseRunner(report_step)

        async with self._client(creds) as client:
            segment = await self._revenue_segment(client)
            if segment is None:
                runner.skip(
                    "discover_revenue_segments",
                    "Discover revenue chart segments",
                    "No product-type segment on the revenue chart; revenue is not split",
                )

            revenue_ok = False
            for chart_name, metric_type in CHART_METRICS.items():

                async def fetch_chart(chart_name=chart_name, metric_type=metric_type):
                    chart = await client.get_chart(chart_name, start, end)
                    metrics = chart_to_metrics(chart, metric_type, start, end)
                    return len(metrics), metrics

                ok = await runner.run(
                    f"fetch_chart_{chart_name}", f"Fetch RevenueCat chart: {chart_name}", fetch_chart
                )
                if chart_name == "revenue":
                    revenue_ok = ok

            runner.add_metrics(carry_forward(runner.metrics, today))

            if revenue_ok and segment is not None:

                async def split_revenue():
                    chart = await client.get_chart("revenue", start, end, segment=segment)
                    metrics = segmented_revenue_to_metrics(chart, start, end)
                    return len(metrics), metrics

                await runner.run(
                    "split_revenue_segmented", "Split revenue by product type", split_revenue
                )

        result = runner.result()
        logger.info(
            f"RevenueCat sync for {account.id} finished (success={result.success})",
            extra={"account_id": account.id, "records": result.records_processed},
        )
        return result

    async def validate_credentials(self, credentials: Dict[str, str]) -> bool:
        if not credentials.get("secret_api_key") or not credentials.get("project_id"):
            return False
        today = datetime.now(timezone.utc).date()
        try:
            async with self._client(credentials) as client:
                await client.get_chart("mrr", today - timedelta(days=1), today)
            return True
        except ProviderAPIError as e:
            logger.info(f"RevenueCat credential check rejected: status {e.status_code}")
            return False


def build_revenuecat_integration(
    timeout: float = 30.0,
    max_retries: int = 4,
    lookback_days: int = 90,
) -> IntegrationDefinition:
    return IntegrationDefinition(
        id=REVENUECAT_ID,
        name="RevenueCat",
        description=(
            "Connect your RevenueCat project to track in-app subscription metrics including MRR, "
            "active subscriptions, revenue, and customer counts."
        ),
        credentials=[
            CredentialField(
                key="secret_api_key",
                label="Secret API Key",
                placeholder="sk_...",
                help_text=(
                    "Project Settings → API Keys → New secret key, with Charts metrics "
                    'permissions set to "Read only".'
                ),
                help_url="https://app.revenuecat.com/overview",
            ),
            CredentialField(
                key="project_id",
                label="Project ID",
                secret=False,
                placeholder="e.g., abc123def456",
                help_text="The id in the dashboard URL: /projects/<project id>/overview.",
                help_url="https://app.revenuecat.com/overview",
            ),
        ],
        metric_types=[
            "mrr",
            "revenue",
            "subscription_revenue",
            "one_time_revenue",
            "active_subscriptions",
            "active_trials",
            "new_customers",
            "active_users",
        ],
        required_permissions=[
            RequiredPermission(
                resource="charts_metrics:charts",
                label="Charts Metrics - Charts",
                reason="Historical chart data: MRR, revenue, actives, trials and customers",
            ),
        ],
        fetcher=RevenueCatFetcher(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
    )
