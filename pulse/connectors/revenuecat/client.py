"""PULSE — RevenueCat Charts API Client.

Bearer auth with a project-scoped secret key. The Charts domain allows
five requests a minute, so calls are paced and a 429 waits for the
`backoff_ms` the API hands back.
"""

import asyncio
import time
from datetime import date
from typing import Any, Dict, Optional

import httpx

from pulse.connectors.http import ProviderClient
from pulse.core.logging import get_logger

logger = get_logger("revenuecat.client")

REVENUECAT_BASE = "https://api.revenuecat.com/v2"
MIN_REQUEST_INTERVAL = 13.0  # seconds; 60 / 5 plus margin
DEFAULT_RATE_LIMIT_WAIT = 15.0
DAILY_RESOLUTION = "0"


class RevenueCatClient(ProviderClient):
    def __init__(
        self,
        secret_api_key: str,
        project_id: str,
        timeout: float = 30.0,
        max_retries: int = 4,
        retry_base_delay: float = 2,
        min_request_interval: float = MIN_REQUEST_INTERVAL,
        rate_limit_wait: float = DEFAULT_RATE_LIMIT_WAIT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            REVENUECAT_BASE,
            bearer_token=secret_api_key,
            provider="revenuecat",
            timeout=timeout,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
            transport=transport,
        )
        self.project_id = project_id
        self.min_request_interval = min_request_interval
        self.default_rate_limit_wait = rate_limit_wait
        self._last_request: Optional[float] = None

    def _rate_limit_wait(self, response: httpx.Response, attempt: int) -> float:
        try:
            body = response.json()
        except ValueError:
            body = None
        backoff_ms = body.get("backoff_ms") if isinstance(body, dict) else None
        if isinstance(backoff_ms, (int, float)) and not isinstance(backoff_ms, bool):
            return backoff_ms / 1000
        return self.default_rate_limit_wait

    async def _pace(self) -> None:
        if self._last_request is not None:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_request_interval:
                await asyncio.sleep(self.min_request_interval - elapsed)
        self._last_request = time.monotonic()

    async def get(self, path: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        await self._pace()
        return await super().get(path, params)

    # ── Charts ──

    async def get_chart(
        self,
        chart_name: str,
        start: date,
        end: date,
        segment: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {
            "start_date": start.strftime("%Y-%m-%d"),
            "end_date": end.strftime("%Y-%m-%d"),
            "resolution": DAILY_RESOLUTION,
        }
        if segment:
            params["segment"] = segment
        chart = await self.get(f"/projects/{self.project_id}/charts/{chart_name}", params)
        logger.info(
            f"Fetched RevenueCat chart {chart_name}",
            extra={"records": len(chart.get("values") or [])},
        )
        return chart

    async def get_chart_options(self, chart_name: str) -> Dict[str, Any]:
        return await self.get(f"/projects/{self.project_id}/charts/{chart_name}/options")
