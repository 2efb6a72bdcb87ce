"""PULSE — Stripe API Client.

Thin read-only wrapper over the Stripe REST API using the shared provider
client. Handles Stripe's cursor pagination (`starting_after` / `has_more`).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from pulse.connectors.http import ProviderClient
from pulse.core.logging import get_logger

logger = get_logger("stripe.client")

STRIPE_BASE = "https://api.stripe.com"
PAGE_LIMIT = 100


class StripeClient(ProviderClient):
    def __init__(
        self,
        secret_key: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            STRIPE_BASE,
            bearer_token=secret_key,
            provider="stripe",
            timeout=timeout,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            transport=transport,
        )

    # ── Pagination ──

    async def _list_all(
        self,
        path: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 200,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a Stripe list endpoint."""
        items: List[Dict[str, Any]] = []
        params = {**(params or {}), "limit": PAGE_LIMIT}

        for _ in range(max_pages):
            result = await self.get(path, params)
            data = result.get("data", [])
            items.extend(data)
            if not result.get("has_more") or not data:
                break
            params["starting_after"] = data[-1]["id"]

        logger.info(f"Fetched {len(items)} records from {path}", extra={"records": len(items)})
        return items

    # ── Resources ──

    async def list_charges(self, since: datetime) -> List[Dict[str, Any]]:
        return await self._list_all("/v1/charges", {"created[gte]": int(since.timestamp())})

    async def list_active_subscriptions(self) -> List[Dict[str, Any]]:
        return await self._list_all("/v1/subscriptions", {"status": "active"})

    async def list_customers(self, since: datetime) -> List[Dict[str, Any]]:
        customers = await self._list_all("/v1/customers", {"created[gte]": int(since.timestamp())})
        return [c for c in customers if not c.get("deleted")]

    async def retrieve_balance(self) -> Dict[str, Any]:
        return await self.get("/v1/balance")
