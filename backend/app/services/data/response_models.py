"""Pydantic response models for external API validation.

These models validate responses from the Aptos fullnode, CoinGecko,
CoinMarketCap and DeFiLlama and provide typed access to the fields we use.
They don't need to capture every field.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.contracts import OCTAS_PER_APT


# ==================== Timestamp Parsing ====================

def parse_aptos_timestamp(value: Any) -> Optional[datetime]:
    """Parse an Aptos transaction timestamp.

    The fullnode reports microseconds since the epoch as a string.
    Returns a naive UTC datetime, or None for empty values.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value

    try:
        micros = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Cannot parse timestamp: {value!r}")

    return datetime.fromtimestamp(micros / 1_000_000, timezone.utc).replace(tzinfo=None)


# ==================== Aptos Fullnode Models ====================

class AptosLedgerInfo(BaseModel):
    """Ledger info from GET / on a fullnode."""
    chain_id: int
    ledger_version: Optional[str] = None
    block_height: Optional[str] = None


class AptosResource(BaseModel):
    """Account resource from /accounts/{address}/resources."""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def coin_value_octas(self) -> int:
        """Raw coin value for CoinStore resources, 0 otherwise."""
        coin = self.data.get("coin") or {}
        try:
            return int(coin.get("value", 0))
        except (TypeError, ValueError):
            return 0

    @property
    def coin_value_apt(self) -> float:
        """Coin value converted from octas."""
        return self.coin_value_octas / OCTAS_PER_APT


class AptosTransactionPayload(BaseModel):
    """Entry function payload. Other payload kinds carry no function."""
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    function: Optional[str] = None


class AptosTransaction(BaseModel):
    """Transaction from /accounts/{address}/transactions."""
    model_config = ConfigDict(extra="ignore")

    hash: str
    type: Optional[str] = None
    version: Optional[str] = None
    timestamp: Optional[datetime] = None
    success: bool = False
    gas_used: Optional[int] = None
    payload: Optional[AptosTransactionPayload] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_aptos_timestamp(v)

    @field_validator("gas_used", mode="before")
    @classmethod
    def parse_gas(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        return int(v)


# ==================== Market Data Models ====================

class CoinGeckoSimplePrice(BaseModel):
    """Per-coin entry in a /simple/price response."""
    usd: Optional[float] = None
    usd_24h_change: Optional[float] = None
    usd_market_cap: Optional[float] = None


class CoinGeckoMarketChart(BaseModel):
    """Response from /coins/{id}/market_chart.

    Each price point is ``[timestamp_ms, price]``.
    """
    prices: List[List[float]] = Field(default_factory=list)

    def price_points(self) -> List[tuple]:
        """Price points as ``(datetime, price)`` tuples, oldest first."""
        points = []
        for item in self.prices:
            if len(item) < 2:
                continue
            ts = datetime.fromtimestamp(item[0] / 1000, timezone.utc).replace(tzinfo=None)
            points.append((ts, float(item[1])))
        return points


class CoinMarketCapUsdQuote(BaseModel):
    price: Optional[float] = None
    percent_change_24h: Optional[float] = None
    market_cap: Optional[float] = None


class CoinMarketCapQuote(BaseModel):
    """Per-symbol entry in /cryptocurrency/quotes/latest."""
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    quote: Dict[str, CoinMarketCapUsdQuote] = Field(default_factory=dict)

    @property
    def usd(self) -> Optional[CoinMarketCapUsdQuote]:
        return self.quote.get("USD")


class DefiLlamaPool(BaseModel):
    """Pool from the DeFiLlama yields /pools endpoint.

    ``apy`` is already expressed in percent.
    """
    model_config = ConfigDict(extra="ignore")

    pool: Optional[str] = None
    chain: Optional[str] = None
    project: str
    symbol: Optional[str] = None
    tvlUsd: Optional[float] = None
    apy: Optional[float] = None
    apyBase: Optional[float] = None
    apyReward: Optional[float] = None

    @property
    def apr_estimate(self) -> float:
        """Base APY when reported, otherwise the total APY."""
        if self.apyBase is not None:
            return float(self.apyBase)
        return float(self.apy or 0)


class DefiLlamaPoolsResponse(BaseModel):
    status: Optional[str] = None
    data: List[DefiLlamaPool] = Field(default_factory=list)

    @field_validator("data", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, list):
            return v
        return [v]


# ==================== AMM Position Models ====================

class AmmPosition(BaseModel):
    """Liquidity position from a DEX positions API.

    PancakeSwap reports ``valueUSD`` and a nested pool name, Liquidswap
    reports ``value`` and ``poolName``.
    """
    model_config = ConfigDict(extra="ignore")

    valueUSD: Optional[float] = None
    value: Optional[float] = None
    pool: Optional[Dict[str, Any]] = None
    poolName: Optional[str] = None

    @property
    def value_usd(self) -> float:
        if self.valueUSD is not None:
            return float(self.valueUSD)
        return float(self.value or 0)

    @property
    def pool_label(self) -> str:
        if self.pool and self.pool.get("name"):
            return str(self.pool["name"])
        return self.poolName or "Unknown Pool"


class AmmPositionsResponse(BaseModel):
    positions: List[AmmPosition] = Field(default_factory=list)

    @field_validator("positions", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        return v
