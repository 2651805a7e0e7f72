"""CoinGecko API client for token price data.

Uses the simple/price endpoint for spot prices (APT, BTC, ETH) and the
market_chart endpoint for APT price history. CoinGecko is the primary
price source; the market data service falls back to CoinMarketCap.

API docs: https://docs.coingecko.com/reference/simple-price
"""

import time
from typing import Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.services.data.response_models import CoinGeckoMarketChart, CoinGeckoSimplePrice

logger = structlog.get_logger()


def _headers() -> Dict[str, str]:
    settings = get_settings()
    headers = {"Accept": "application/json"}
    if settings.coingecko_api_key:
        headers["x-cg-demo-api-key"] = settings.coingecko_api_key
    return headers


async def fetch_simple_prices(coin_ids: List[str]) -> Optional[Dict[str, CoinGeckoSimplePrice]]:
    """Fetch USD spot prices for a list of CoinGecko coin ids.

    Returns a mapping of coin id to price entry, or None on failure.
    Coins missing from the response are omitted.
    """
    settings = get_settings()
    try:
        start = time.monotonic()
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
            response = await client.get(
                f"{settings.coingecko_base_url}/simple/price",
                params={
                    "ids": ",".join(coin_ids),
                    "vs_currencies": "usd",
                    "include_24hr_change": "true",
                    "include_market_cap": "true",
                },
                headers=_headers(),
            )
            latency_ms = (time.monotonic() - start) * 1000

            if response.status_code != 200:
                logger.warning(
                    "CoinGecko API error",
                    status=response.status_code,
                    body=response.text[:200],
                    latency_ms=round(latency_ms, 1),
                )
                return None

            data = response.json()
            prices = {
                coin_id: CoinGeckoSimplePrice.model_validate(entry)
                for coin_id, entry in data.items()
            }
            prices = {k: v for k, v in prices.items() if v.usd is not None and v.usd > 0}

            if not prices:
                logger.warning("CoinGecko returned no usable prices", ids=coin_ids)
                return None

            logger.info(
                "CoinGecko prices fetched",
                ids=list(prices.keys()),
                latency_ms=round(latency_ms, 1),
            )
            return prices

    except (httpx.HTTPError, httpx.TimeoutException) as e:
        logger.warning("CoinGecko request failed", error=str(e))
        return None
    except (ValueError, ValidationError) as e:
        logger.warning("CoinGecko response invalid", error=str(e))
        return None


async def fetch_market_chart(coin_id: str, days: int) -> Optional[CoinGeckoMarketChart]:
    """Fetch price history for a coin over the last ``days`` days.

    Returns None on failure or when the chart has no price points.
    """
    settings = get_settings()
    params = {"vs_currency": "usd", "days": days}
    if days > 30:
        params["interval"] = "daily"

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
            response = await client.get(
                f"{settings.coingecko_base_url}/coins/{coin_id}/market_chart",
                params=params,
                headers=_headers(),
            )

            if response.status_code != 200:
                logger.warning(
                    "CoinGecko market chart error",
                    coin_id=coin_id,
                    status=response.status_code,
                )
                return None

            chart = CoinGeckoMarketChart.model_validate(response.json())
            if not chart.prices:
                logger.warning("CoinGecko market chart empty", coin_id=coin_id, days=days)
                return None
            return chart

    except (httpx.HTTPError, httpx.TimeoutException) as e:
        logger.warning("CoinGecko market chart request failed", coin_id=coin_id, error=str(e))
        return None
    except (ValueError, ValidationError) as e:
        logger.warning("CoinGecko market chart invalid", coin_id=coin_id, error=str(e))
        return None
