"""Aptos fullnode REST client with endpoint fallback.

API Reference: https://fullnode.mainnet.aptoslabs.com/v1/spec
Endpoints are pinged in configured order with the ledger info call; the
first one that answers is used until a request fails, after which the next
request pings them again. If none answers, the first endpoint is used anyway.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.services.data.response_models import (
    AptosLedgerInfo,
    AptosResource,
    AptosTransaction,
)

logger = structlog.get_logger()


class AptosError(Exception):
    """Aptos fullnode API error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AptosClient:
    """Async client for the Aptos fullnode REST API."""

    def __init__(self):
        settings = get_settings()
        if settings.aptos_network.lower() == "testnet":
            self.endpoints = list(settings.aptos_testnet_endpoints)
        else:
            self.endpoints = list(settings.aptos_mainnet_endpoints)
        self.network = settings.aptos_network.lower()
        self._endpoint: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def active_endpoint(self) -> Optional[str]:
        return self._endpoint

    async def _ping(self, client: httpx.AsyncClient, endpoint: str) -> bool:
        try:
            start = time.monotonic()
            response = await client.get(f"{endpoint}/")
            latency_ms = (time.monotonic() - start) * 1000
        except httpx.HTTPError as e:
            logger.warning("Aptos endpoint unreachable", endpoint=endpoint, error=str(e))
            return False

        if response.status_code != 200:
            logger.warning("Aptos endpoint unhealthy", endpoint=endpoint, status=response.status_code)
            return False

        logger.info("Aptos endpoint selected", endpoint=endpoint, latency_ms=round(latency_ms, 1))
        return True

    async def _resolve_endpoint(self) -> str:
        """Pick the first healthy endpoint, probing in configured order."""
        async with self._lock:
            if self._endpoint is not None:
                return self._endpoint

            settings = get_settings()
            timeout = httpx.Timeout(settings.aptos_ping_timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout) as client:
                for endpoint in self.endpoints:
                    if await self._ping(client, endpoint):
                        self._endpoint = endpoint
                        return endpoint

            logger.warning(
                "All Aptos endpoints failed, defaulting to first",
                endpoint=self.endpoints[0],
            )
            self._endpoint = self.endpoints[0]
            return self._endpoint

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a fullnode path and return parsed JSON.

        Raises:
            AptosError: On transport failures and non-200 responses
        """
        settings = get_settings()
        endpoint = await self._resolve_endpoint()
        url = f"{endpoint}{path}"

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            # Ping again on the next call
            self._endpoint = None
            raise AptosError(f"Request to {path} failed: {e}") from e

        if response.status_code != 200:
            body = response.text[:300]
            logger.warning("Aptos API error", path=path, status=response.status_code, body=body)
            raise AptosError(
                f"API error {response.status_code}: {body}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise AptosError(f"Invalid JSON from {path}") from e

    async def get_ledger_info(self) -> AptosLedgerInfo:
        """Endpoint: GET /"""
        data = await self._request("/")
        try:
            return AptosLedgerInfo.model_validate(data)
        except ValidationError as e:
            raise AptosError(f"Invalid ledger info: {e}") from e

    async def get_account_resources(self, address: str) -> List[AptosResource]:
        """Endpoint: GET /accounts/{address}/resources"""
        data = await self._request(f"/accounts/{address}/resources")
        if not isinstance(data, list):
            raise AptosError("Unexpected resources payload")
        resources = []
        for item in data:
            try:
                resources.append(AptosResource.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed resource", address=address, errors=str(e))
        return resources

    async def get_account_transactions(
        self,
        address: str,
        limit: Optional[int] = None,
    ) -> List[AptosTransaction]:
        """Endpoint: GET /accounts/{address}/transactions"""
        settings = get_settings()
        data = await self._request(
            f"/accounts/{address}/transactions",
            params={"limit": limit or settings.aptos_transactions_limit},
        )
        if not isinstance(data, list):
            raise AptosError("Unexpected transactions payload")
        transactions = []
        for item in data:
            try:
                transactions.append(AptosTransaction.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed transaction", address=address, errors=str(e))
        return transactions

    async def health_check(self) -> bool:
        """True when the active endpoint answers a ledger info call."""
        try:
            await self.get_ledger_info()
            return True
        except AptosError:
            return False


# Lazy singleton client instance
_aptos_client: Optional[AptosClient] = None


def get_aptos_client() -> AptosClient:
    """Get or create the Aptos client singleton.

    Client is created on first access, not at import time.
    """
    global _aptos_client
    if _aptos_client is None:
        _aptos_client = AptosClient()
    return _aptos_client
