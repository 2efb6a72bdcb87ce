"""PULSE — Gumroad Data Fetcher."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

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
from pulse.connectors.gumroad.client import GumroadClient
from pulse.connectors.gumroad.transformer import (
    is_membership,
    products_to_metrics,
    sales_to_metrics,
    subscribers_to_metrics,
)
from pulse.connectors.http import ProviderAPIError
from pulse.connectors.steps import PhaseRunner
from pulse.core.logging import get_logger

logger = get_logger("gumroad.fetcher")

GUMROAD_ID = "gumroad"


class GumroadFetcher(DataFetcher):
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

    def _client(self, credentials: Dict[str, str]) -> GumroadClient:
        return GumroadClient(
            credentials["access_token"],
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
        products: List[Dict[str, Any]] = []

        async with self._client(account.credentials) as client:

            async def fetch_products():
                products.extend(await client.list_products())
                return len(products), products_to_metrics(products, today)

            async def fetch_sales():
                rows = await client.list_sales(since)
                return len(rows), sales_to_metrics(rows)

            async def fetch_subscribers():
                memberships = [p for p in products if is_membership(p)]
                by_product = {}
                for product in memberships:
                    by_product[product["id"]] = await client.list_subscribers(product["id"])
                names = {p["id"]: p.get("name") or p["id"] for p in memberships}
                count = sum(len(rows) for rows in by_product.values())
                return count, subscribers_to_metrics(by_product, names, today)

            products_ok = await runner.run("fetch_products", "Fetch products", fetch_products)
            await runner.run("fetch_sales", "Fetch sales & revenue", fetch_sales)
            if products_ok:
                await runner.run("fetch_subscribers", "Fetch subscribers", fetch_subscribers)
            else:
                runner.skip("fetch_subscribers", "Fetch subscribers", "Product list unavailable")

        result = runner.result()
        logger.info(
            f"Gumroad sync for {account.id} finished (success={result.success})",
            extra={"account_id": account.id, "records": result.records_processed},
        )
        return result

    async def validate_credentials(self, credentials: Dict[str, str]) -> bool:
        if not credentials.get("access_token"):
            return False
        try:
            async with self._client(credentials) as client:
                user = await client.get_user()
            return bool(user.get("success", True))
        except ProviderAPIError as e:
            logger.info(f"Gumroad credential check rejected: status {e.status_code}")
            return False


def build_gumroad_integration(
    timeout: float = 30.0,
    max_retries: int = 3,
    lookback_days: int = 30,
) -> IntegrationDefinition:
    return IntegrationDefinition(
        id=GUMROAD_ID,
        name="Gumroad",
        description="Connect your Gumroad account to track sales, revenue, and subscribers.",
        credentials=[
            CredentialField(
                key="access_token",
                label="Access Token",
                help_text='Generate an access token on the Gumroad "Advanced" settings page.',
                help_url="https://app.gumroad.com/settings/advanced#application-form",
            )
        ],
        metric_types=["revenue", "sales_count", "products_count", "active_subscribers"],
        required_permissions=[
            RequiredPermission(resource="products", label="Products", reason="List products"),
            RequiredPermission(resource="sales", label="Sales", reason="Daily revenue and sale counts"),
            RequiredPermission(
                resource="subscribers", label="Subscribers", reason="Active subscribers of memberships"
            ),
            RequiredPermission(resource="user", label="Profile", reason="Verify the token on connect"),
        ],
        fetcher=GumroadFetcher(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
    )
