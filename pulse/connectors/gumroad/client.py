"""PULSE — Gumroad API Client.

Gumroad authenticates with an `access_token` query parameter and paginates
with `next_page_key`.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from pulse.connectors.http import ProviderClient
from pulse.core.logging import get_logger

logger = get_logger("gumroad.client")

GUMROAD_BASE = "https://api.gumroad.com/v2"


class GumroadClient(ProviderClient):
    def __init__(
        self,
        access_token: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            GUMROAD_BASE,
            query_auth={"access_token": access_token},
            provider="gumroad",
            timeout=timeout,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            transport=transport,
        )

    async def _paged(
        self,
        path: str,
        field: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 500,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        params = dict(params or {})

        for _ in range(max_pages):
            result = await self.get(path, params)
            items.extend(result.get(field) or [])
            next_key = result.get("next_page_key")
            if not next_key:
                break
            params["page_key"] = next_key

        logger.info(f"Fetched {len(items)} {field} from {path}", extra={"records": len(items)})
        return items

    async def list_products(self) -> List[Dict[str, Any]]:
        result = await self.get("/products")
        return result.get("products") or []

    async def list_sales(self, since: datetime) -> List[Dict[str, Any]]:
        return await self._paged("/sales", "sales", {"after": since.strftime("%Y-%m-%d")})

    async def list_subscribers(self, product_id: str) -> List[Dict[str, Any]]:
        return await self._paged(
            f"/products/{product_id}/subscribers", "subscribers", {"paginated": "true"}
        )

    async def get_user(self) -> Dict[str, Any]:
        return await self.get("/user")
