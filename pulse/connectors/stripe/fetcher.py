"""PULSE — Stripe Data Fetcher."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

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
from pulse.connectors.steps import PhaseRunner
from pulse.connectors.stripe.client import StripeClient
from pulse.connectors.stripe.transformer import (
    charges_to_metrics,
    customers_to_metrics,
    subscriptions_to_metrics,
)
from pulse.core.logging import get_logger

logger = get_logger("stripe.fetcher")

STRIPE_ID = "stripe"


class StripeFetcher(DataFetcher):
    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        lookback_days: int = 30,
        retry_base_delay: float = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.lookback_days = lookback_days
        self.retry_base_delay = retry_base_delay
        self.transport = transport

    def _client(self, credentials: Dict[str, str]) -> StripeClient:
        return StripeClient(
            credentials["secret_key"],
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            transport=self.transport,
        )

    async def sync(
        self,
        account: AccountConfig,
        since: Optional[datetime] = None,
        report_step: Optional[StepReporter] = None,
    ) -> SyncResult:
        now = datetime.now(timezone.utc)
        if since is None:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            since = midnight - timedelta(days=self.lookback_days)
        today = now.strftime("%Y-%m-%d")
        runner = PhaseRunner(report_step)

        async with self._client(account.credentials) as client:

            async def charges():
                rows = await client.list_charges(since)
                return len(rows), charges_to_metrics(rows)

            async def subscriptions():
                rows = await client.list_active_subscriptions()
                return len(rows), subscriptions_to_metrics(rows, today)

            async def customers():
                rows = await client.list_customers(since)
                return len(rows), customers_to_metrics(rows)

            await runner.run("fetch_charges", "Fetch charges & revenue", charges)
            await runner.run("fetch_subscriptions", "Fetch subscriptions & MRR", subscriptions)
            await runner.run("fetch_customers", "Fetch new customers", customers)

        result = runner.result()
        logger.info(
            f"Stripe sync for {account.id} finished (success={result.success})",
            extra={"account_id": account.id, "records": result.records_processed},
        )
        return result

    async def validate_credentials(self, credentials: Dict[str, str]) -> bool:
        if not credentials.get("secret_key"):
            return False
        try:
            async with self._client(credentials) as client:
                await client.retrieve_balance()
            return True
        except ProviderAPIError as e:
            logger.info(f"Stripe credential check rejected: status {e.status_code}")
            return False


def build_stripe_integration(
    timeout: float = 30.0,
    max_retries: int = 3,
    lookback_days: int = 30,
) -> IntegrationDefinition:
    return IntegrationDefinition(
        id=STRIPE_ID,
        name="Stripe",
        description="Connect your Stripe account to track revenue, subscriptions, and charges.",
        credentials=[
            CredentialField(
                key="secret_key",
                label="Restricted API Key (read-only)",
                placeholder="rk_live_... or rk_test_...",
                help_text=(
                    'Create a restricted key with "Read" access to Charges, Customers, '
                    "Subscriptions and Balance."
                ),
                help_url="https://dashboard.stripe.com/apikeys",
            )
        ],
        metric_types=[
            "revenue",
            "subscription_revenue",
            "one_time_revenue",
            "charges_count",
            "sales_count",
            "refunds",
            "mrr",
            "active_subscriptions",
            "new_customers",
        ],
        required_permissions=[
            RequiredPermission(resource="charges", label="Charges", reason="Daily revenue and refunds"),
            RequiredPermission(resource="customers", label="Customers", reason="Count new customers"),
            RequiredPermission(
                resource="subscriptions", label="Subscriptions", reason="MRR and active subscription count"
            ),
            RequiredPermission(resource="balance", label="Balance", reason="Verify the API key on connect"),
        ],
        fetcher=StripeFetcher(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
    )
