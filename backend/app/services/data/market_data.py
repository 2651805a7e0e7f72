"""Market data service: token prices, price history, protocol yields.

Every public method degrades instead of raising. Prices fall back from
CoinGecko to CoinMarketCap, then to the last good value kept under a
``:stale`` cache key, then to configured defaults. Protocol yields fall
back from DeFiLlama to the stale copy, then to built-in defaults.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.contracts import PROTOCOL_ADDRESSES, PROTOCOL_CATEGORIES
from app.core.redis import cache
from app.services.data import coingecko_client, defillama_client
from app.services.data.response_models import CoinMarketCapQuote

logger = structlog.get_logger()

APTOS_ID = "aptos"
BITCOIN_ID = "bitcoin"
ETHEREUM_ID = "ethereum"

# CoinGecko id -> CoinMarketCap symbol
CMC_SYMBOLS = {APTOS_ID: "APT", BITCOIN_ID: "BTC", ETHEREUM_ID: "ETH"}

DEFAULT_PRICES = {BITCOIN_ID: 60000.0, ETHEREUM_ID: 3000.0}

# protocol -> (category, apr, apy, product)
DEFAULT_PROTOCOL_YIELDS = {
    "amnis": ("staking", 5.25, 5.39, "stAPT"),
    "thala": ("staking", 4.87, 4.99, "sthAPT"),
    "tortuga": ("staking", 4.61, 4.72, "tAPT"),
    "ditto": ("staking", 4.35, 4.44, "dAPT"),
    "aries": ("lending", 3.15, 3.2, "Lending Pool"),
    "echo": ("lending", 2.95, 3.0, "Echo Lending"),
    "pancakeswap": ("liquidity", 8.5, 8.87, "APT-USDC LP"),
    "liquidswap": ("liquidity", 7.8, 8.12, "APT-USDC LP"),
}

DEFAULT_RECOMMENDED_PROTOCOL = "amnis"

STALE_SUFFIX = ":stale"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenPrice:
    """Spot price of one token in USD."""
    price_usd: float
    change_24h_pct: float = 0.0
    market_cap_usd: float = 0.0
    source: str = "coingecko"

    @property
    def is_default(self) -> bool:
        return self.source == "default"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price_usd": self.price_usd,
            "change_24h_pct": self.change_24h_pct,
            "market_cap_usd": self.market_cap_usd,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenPrice":
        return cls(
            price_usd=float(data["price_usd"]),
            change_24h_pct=float(data.get("change_24h_pct") or 0),
            market_cap_usd=float(data.get("market_cap_usd") or 0),
            source=data.get("source", "cache"),
        )


@dataclass
class PricePoint:
    timestamp: datetime
    price_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "price_usd": self.price_usd}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricePoint":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            price_usd=float(data["price_usd"]),
        )


@dataclass
class ProtocolYield:
    """Yield of one product on one protocol.

    ``category`` is ``staking``, ``lending`` or ``liquidity``.
    Rates are in percent.
    """
    protocol: str
    category: str
    apr: float
    apy: float
    product: str
    tvl_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "category": self.category,
            "apr": self.apr,
            "apy": self.apy,
            "product": self.product,
            "tvl_usd": self.tvl_usd,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolYield":
        return cls(
            protocol=data["protocol"],
            category=data["category"],
            apr=float(data["apr"]),
            apy=float(data["apy"]),
            product=data["product"],
            tvl_usd=float(data.get("tvl_usd") or 0),
        )


@dataclass
class ProtocolRates:
    """Yields across all tracked protocols."""
    yields: List[ProtocolYield]
    recommended_protocol: str
    updated_at: datetime = field(default_factory=_utcnow)
    is_default: bool = False

    @property
    def protocols(self) -> List[str]:
        return sorted({y.protocol for y in self.yields})

    @property
    def total_tvl_usd(self) -> float:
        return sum(y.tvl_usd for y in self.yields)

    def for_protocol(self, protocol: str) -> List[ProtocolYield]:
        protocol = protocol.lower()
        return [y for y in self.yields if y.protocol == protocol]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "yields": [y.to_dict() for y in self.yields],
            "recommended_protocol": self.recommended_protocol,
            "updated_at": self.updated_at.isoformat(),
            "is_default": self.is_default,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolRates":
        return cls(
            yields=[ProtocolYield.from_dict(y) for y in data.get("yields", [])],
            recommended_protocol=data.get("recommended_protocol", DEFAULT_RECOMMENDED_PROTOCOL),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            is_default=bool(data.get("is_default", False)),
        )


@dataclass
class MarketOverview:
    """Prices, protocol yields and a coarse APT sentiment."""
    prices: Dict[str, TokenPrice]
    protocol_rates: ProtocolRates
    sentiment: str
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def apt(self) -> Optional[TokenPrice]:
        return self.prices.get(APTOS_ID)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prices": {k: v.to_dict() for k, v in self.prices.items()},
            "protocol_rates": self.protocol_rates.to_dict(),
            "total_tvl_usd": self.protocol_rates.total_tvl_usd,
            "recommended_protocol": self.protocol_rates.recommended_protocol,
            "sentiment": self.sentiment,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketOverview":
        return cls(
            prices={k: TokenPrice.from_dict(v) for k, v in data.get("prices", {}).items()},
            protocol_rates=ProtocolRates.from_dict(data["protocol_rates"]),
            sentiment=data.get("sentiment", "Neutral"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def default_protocol_rates() -> ProtocolRates:
    """Built-in yields used when no live source answers."""
    return ProtocolRates(
        yields=[
            ProtocolYield(protocol=name, category=cat, apr=apr, apy=apy, product=product)
            for name, (cat, apr, apy, product) in DEFAULT_PROTOCOL_YIELDS.items()
        ],
        recommended_protocol=DEFAULT_RECOMMENDED_PROTOCOL,
        is_default=True,
    )


def pick_recommended_protocol(yields: List[ProtocolYield]) -> str:
    """Protocol with the highest staking APR."""
    staking = [y for y in yields if y.category == "staking" and y.apr > 0]
    if not staking:
        return DEFAULT_RECOMMENDED_PROTOCOL
    return max(staking, key=lambda y: y.apr).protocol


def classify_sentiment(change_24h_pct: float) -> str:
    """Coarse sentiment from the APT 24h price change."""
    if change_24h_pct >= 5:
        return "Bullish"
    if change_24h_pct <= -5:
        return "Bearish"
    return "Neutral"


def price_range_volatility(prices: List[float]) -> float:
    """High/low spread as a percentage of the low."""
    if len(prices) < 2:
        return 0.0
    low = min(prices)
    high = max(prices)
    if low <= 0:
        return 0.0
    return (high - low) / low * 100


class MarketDataService:
    """Aggregates external market data with caching and fallbacks."""

    # ==================== Prices ====================

    async def get_token_prices(
        self,
        coin_ids: List[str],
        force_refresh: bool = False,
    ) -> Dict[str, TokenPrice]:
        """Get USD spot prices keyed by CoinGecko id.

        Always returns an entry for every requested id.
        """
        settings = get_settings()
        cache_key = f"prices:{','.join(sorted(coin_ids))}"

        if not force_refresh:
            cached = await cache.get(cache_key)
            if cached is not None:
                return {k: TokenPrice.from_dict(v) for k, v in cached.items()}

        prices = await self._fetch_coingecko_prices(coin_ids)
        if not prices:
            prices = await self._fetch_coinmarketcap_prices(coin_ids)

        if prices:
            serialized = {k: v.to_dict() for k, v in prices.items()}
            await cache.set(cache_key, serialized, timedelta(seconds=settings.token_price_cache_seconds))
            await cache.set(cache_key + STALE_SUFFIX, serialized)
        else:
            stale = await cache.get(cache_key + STALE_SUFFIX)
            if stale is not None:
                logger.warning("Serving stale prices after source failures", ids=coin_ids)
                prices = {k: TokenPrice.from_dict(v) for k, v in stale.items()}
            else:
                prices = {}

        for coin_id in coin_ids:
            if coin_id not in prices:
                prices[coin_id] = TokenPrice(
                    price_usd=self._default_price(coin_id),
                    source="default",
                )
                logger.warning("Using default price", coin_id=coin_id, price=prices[coin_id].price_usd)

        return prices

    async def get_apt_price(self, force_refresh: bool = False) -> float:
        """Current APT price in USD."""
        prices = await self.get_token_prices([APTOS_ID], force_refresh=force_refresh)
        return prices[APTOS_ID].price_usd

    def _default_price(self, coin_id: str) -> float:
        if coin_id == APTOS_ID:
            return get_settings().default_apt_price_usd
        return DEFAULT_PRICES.get(coin_id, 1.0)

    async def _fetch_coingecko_prices(self, coin_ids: List[str]) -> Dict[str, TokenPrice]:
        raw = await coingecko_client.fetch_simple_prices(coin_ids)
        if not raw:
            return {}
        return {
            coin_id: TokenPrice(
                price_usd=float(entry.usd),
                change_24h_pct=float(entry.usd_24h_change or 0),
                market_cap_usd=float(entry.usd_market_cap or 0),
                source="coingecko",
            )
            for coin_id, entry in raw.items()
        }

    async def _fetch_coinmarketcap_prices(self, coin_ids: List[str]) -> Dict[str, TokenPrice]:
        """CoinMarketCap quotes, used only when an API key is configured."""
        settings = get_settings()
        if not settings.coinmarketcap_api_key:
            return {}

        symbols = {CMC_SYMBOLS.get(c, c.upper()): c for c in coin_ids}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
                response = await client.get(
                    f"{settings.coinmarketcap_base_url}/cryptocurrency/quotes/latest",
                    params={"symbol": ",".join(symbols.keys())},
                    headers={
                        "X-CMC_PRO_API_KEY": settings.coinmarketcap_api_key,
                        "Accept": "application/json",
                    },
                )
            if response.status_code != 200:
                logger.warning("CoinMarketCap API error", status=response.status_code)
                return {}
            data = response.json().get("data", {})
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("CoinMarketCap request failed", error=str(e))
            return {}

        prices: Dict[str, TokenPrice] = {}
        for symbol, coin_id in symbols.items():
            entry = data.get(symbol)
            if isinstance(entry, list):
                entry = entry[0] if entry else None
            if not entry:
                continue
            try:
                usd = CoinMarketCapQuote.model_validate(entry).usd
            except ValidationError:
                continue
            if usd is None or not usd.price:
                continue
            prices[coin_id] = TokenPrice(
                price_usd=float(usd.price),
                change_24h_pct=float(usd.percent_change_24h or 0),
                market_cap_usd=float(usd.market_cap or 0),
                source="coinmarketcap",
            )

        if prices:
            logger.info("CoinMarketCap fallback prices fetched", ids=list(prices.keys()))
        return prices

    # ==================== History & volatility ====================

    async def get_historical_prices(
        self,
        coin_id: str = APTOS_ID,
        days: int = 30,
    ) -> List[PricePoint]:
        """Price history, oldest first. Empty when no source answers.

        Only multi-day charts keep a stale copy to fall back on.
        """
        cache_key = f"history:{coin_id}:{days}"
        cached = await cache.get(cache_key)
        if cached is not None:
            return [PricePoint.from_dict(p) for p in cached]

        chart = await coingecko_client.fetch_market_chart(coin_id, days)
        if chart is None:
            stale = await cache.get(cache_key + STALE_SUFFIX) if days > 1 else None
            if stale is not None:
                return [PricePoint.from_dict(p) for p in stale]
            return []

        points = [PricePoint(timestamp=ts, price_usd=price) for ts, price in chart.price_points()]
        serialized = [p.to_dict() for p in points]
        ttl = timedelta(hours=1) if days > 1 else timedelta(minutes=5)
        await cache.set(cache_key, serialized, ttl)
        if days > 1:
            await cache.set(cache_key + STALE_SUFFIX, serialized)
        return points

    async def get_market_volatility(self) -> float:
        """24h APT high/low spread in percent. 0 when data is unavailable."""
        points = await self.get_historical_prices(APTOS_ID, days=1)
        volatility = price_range_volatility([p.price_usd for p in points])
        logger.info("Market volatility", volatility_pct=round(volatility, 2), points=len(points))
        return volatility

    # ==================== Protocol yields ====================

    async def get_protocol_rates(self, force_refresh: bool = False) -> ProtocolRates:
        """Yields for the tracked Aptos protocols."""
        settings = get_settings()
        cache_key = "protocols:rates"

        if not force_refresh:
            cached = await cache.get(cache_key)
            if cached is not None:
                return ProtocolRates.from_dict(cached)

        pools = await defillama_client.fetch_aptos_pools()
        live = self._yields_from_pools(pools)

        if live:
            rates = self._merge_with_defaults(live)
            serialized = rates.to_dict()
            await cache.set(cache_key, serialized, timedelta(seconds=settings.protocol_apr_cache_seconds))
            await cache.set(cache_key + STALE_SUFFIX, serialized)
            return rates

        stale = await cache.get(cache_key + STALE_SUFFIX)
        if stale is not None:
            logger.warning("Serving stale protocol rates")
            return ProtocolRates.from_dict(stale)

        logger.warning("Using default protocol rates")
        return default_protocol_rates()

    def _yields_from_pools(self, pools) -> Dict[tuple, ProtocolYield]:
        """Best pool by TVL per (protocol, category) for tracked protocols."""
        best: Dict[tuple, ProtocolYield] = {}
        for pool in pools:
            protocol = self._match_protocol(pool.project)
            if protocol is None:
                continue
            category = PROTOCOL_CATEGORIES[protocol]
            candidate = ProtocolYield(
                protocol=protocol,
                category=category,
                apr=round(pool.apr_estimate, 2),
                apy=round(float(pool.apy or 0), 2),
                product=pool.symbol or pool.pool or protocol,
                tvl_usd=float(pool.tvlUsd or 0),
            )
            key = (protocol, category)
            if key not in best or candidate.tvl_usd > best[key].tvl_usd:
                best[key] = candidate
        return best

    @staticmethod
    def _match_protocol(project: str) -> Optional[str]:
        """Map a DeFiLlama project slug (e.g. ``amnis-finance``) to a tracked protocol."""
        slug = (project or "").lower()
        for protocol in PROTOCOL_ADDRESSES:
            if slug.startswith(protocol):
                return protocol
        return None

    def _merge_with_defaults(self, live: Dict[tuple, ProtocolYield]) -> ProtocolRates:
        merged = {(y.protocol, y.category): y for y in default_protocol_rates().yields}
        merged.update(live)
        yields = sorted(merged.values(), key=lambda y: (y.protocol, y.category))
        return ProtocolRates(
            yields=yields,
            recommended_protocol=pick_recommended_protocol(yields),
        )

    # ==================== Overview ====================

    async def get_market_overview(self, force_refresh: bool = False) -> MarketOverview:
        """APT/BTC/ETH prices, protocol yields and APT sentiment."""
        settings = get_settings()
        cache_key = "market:overview"

        if not force_refresh:
            cached = await cache.get(cache_key)
            if cached is not None:
                return MarketOverview.from_dict(cached)

        prices, rates = await asyncio.gather(
            self.get_token_prices([APTOS_ID, BITCOIN_ID, ETHEREUM_ID], force_refresh=force_refresh),
            self.get_protocol_rates(force_refresh=force_refresh),
        )
        overview = MarketOverview(
            prices=prices,
            protocol_rates=rates,
            sentiment=classify_sentiment(prices[APTOS_ID].change_24h_pct),
        )
        await cache.set(
            cache_key,
            overview.to_dict(),
            timedelta(seconds=settings.market_overview_cache_seconds),
        )
        return overview


# Lazy singleton instance
_market_data_service: Optional[MarketDataService] = None


def get_market_data_service() -> MarketDataService:
    """Get or create the market data service singleton."""
    global _market_data_service
    if _market_data_service is None:
        _market_data_service = MarketDataService()
    return _market_data_service
