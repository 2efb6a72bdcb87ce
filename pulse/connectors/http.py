"""PULSE — Provider HTTP Client.

Shared async client for provider adapters: authentication, retry with
exponential backoff on rate limits / server errors, JSON decoding.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from pulse.core.logging import get_logger

logger = get_logger("connectors.http")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds


class ProviderAPIError(Exception):
    """Raised when a provider API returns an error."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


def _error_message(response: httpx.Response, fallback: str) -> tuple[str, str]:
    """Pull a human message and code out of an error body, if it is JSON."""
    if not response.headers.get("content-type", "").startswith("application/json"):
        return fallback, ""
    try:
        body = response.json()
    except ValueError:
        return fallback, ""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message", fallback), str(error.get("code", "") or error.get("type", ""))
    if isinstance(error, str):
        return error, ""
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"]), ""
    return fallback, ""


class ProviderClient:
    """Async HTTP client for one provider account."""

    def __init__(
        self,
        base_url: str,
        *,
        bearer_token: Optional[str] = None,
        query_auth: Optional[Dict[str, str]] = None,
        provider: str = "provider",
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._headers = {"Accept": "application/json"}
        if bearer_token:
            self._headers["Authorization"] = f"Bearer {bearer_token}"
        self._query_auth = dict(query_auth or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=self._headers, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** (attempt - 1))

    def _rate_limit_wait(self, response: httpx.Response, attempt: int) -> float:
        """Seconds to wait after a 429."""
        return self._backoff(attempt)

    # ── Core Request Method ──

    async def request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make a request with retry + rate-limit handling."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        params = {**(params or {}), **self._query_auth}

        client = await self._get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.request(method, url, params=params)

                if resp.status_code == 429 and attempt < self.max_retries:
                    wait = self._rate_limit_wait(resp, attempt)
                    logger.warning(
                        f"{self.provider} rate limited (429). Retrying in {wait}s "
                        f"(attempt {attempt}/{self.max_retries})",
                        extra={"provider_id": self.provider, "status_code": 429},
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if attempt < self.max_retries and status >= 500:
                    wait = self._backoff(attempt)
                    logger.warning(
                        f"{self.provider} server error {status}. Retrying in {wait}s",
                        extra={"provider_id": self.provider, "status_code": status},
                    )
                    await asyncio.sleep(wait)
                    continue

                message, code = _error_message(e.response, f"HTTP {status}")
                raise ProviderAPIError(
                    f"{self.provider} API error {status}: {message}", status, code
                ) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        f"{self.provider} request error: {e}. Retrying in {wait}s",
                        extra={"provider_id": self.provider},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise ProviderAPIError(
                    f"{self.provider} connection failed after {self.max_retries} attempts: {e}"
                ) from e

        raise ProviderAPIError(f"{self.provider}: max retries exhausted", 429)

    async def get(self, path: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return await self.request("GET", path, params)
