"""Wallet portfolio tracking for Aptos accounts.

Builds a point-in-time snapshot of a wallet: native APT, liquid staking
tokens (stAPT, sthAPT, tAPT, dAPT) and AMM liquidity positions, valued at
the current APT price. Liquid staking tokens are valued 1:1 with APT.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.contracts import (
    APTOS_COIN_TYPE,
    LIQUID_STAKING_TOKENS,
    LP_TOKEN_MARKERS,
)
from app.core.redis import cache
from app.services.data.aptos_client import AptosError, get_aptos_client
from app.services.data.market_data import get_market_data_service
from app.services.data.response_models import AmmPositionsResponse, AptosResource, AptosTransaction

logger = structlog.get_logger()

NATIVE_PROTOCOL = "native"
ESTIMATED_LP_PROTOCOL = "amm"
# Rough per-position value when only LP token resources are visible
ESTIMATED_LP_VALUE_USD = 100.0


class InvalidWalletAddressError(ValueError):
    """Wallet address is not a 32-byte 0x-prefixed hex string."""


def validate_wallet_address(address: str) -> str:
    """Return the lowercased address or raise InvalidWalletAddressError."""
    if not isinstance(address, str) or not address.startswith("0x") or len(address) != 66:
        raise InvalidWalletAddressError(f"Invalid wallet address format: {address!r}")
    try:
        int(address[2:], 16)
    except ValueError:
        raise InvalidWalletAddressError(f"Invalid wallet address format: {address!r}")
    return address.lower()


def coin_store_type(coin_type: str) -> str:
    return f"0x1::coin::CoinStore<{coin_type}>"


def classify_transaction(function_name: Optional[str]) -> str:
    """Classify a transaction by its entry function name."""
    if not function_name:
        return "unknown"

    if "::staking::" in function_name:
        return "stake" if "::staking::stake" in function_name else "unstake"
    if "::lending::" in function_name or "::pool::" in function_name:
        if "::supply" in function_name or "::deposit" in function_name:
            return "lend"
        if "::add_liquidity" in function_name:
            return "addLiquidity"
        if "::remove_liquidity" in function_name:
            return "removeLiquidity"
        if "::swap" in function_name:
            return "swap"
        return "withdraw"
    if "::router::" in function_name or "::swap::" in function_name:
        if "::add_liquidity" in function_name:
            return "addLiquidity"
        if "::remove_liquidity" in function_name:
            return "removeLiquidity"
        if "::swap" in function_name:
            return "swap"
        return "other"
    if "::coin::transfer" in function_name or "::aptos_account::transfer" in function_name:
        return "transfer"
    return "other"


@dataclass(frozen=True)
class AssetHolding:
    """One position in a wallet.

    ``kind`` is ``native``, ``staking`` or ``liquidity``.
    """
    symbol: str
    protocol: str
    kind: str
    amount: float
    value_usd: float
    pool: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "protocol": self.protocol,
            "kind": self.kind,
            "amount": self.amount,
            "value_usd": self.value_usd,
            "pool": self.pool,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetHolding":
        return cls(
            symbol=data["symbol"],
            protocol=data["protocol"],
            kind=data["kind"],
            amount=float(data["amount"]),
            value_usd=float(data["value_usd"]),
            pool=data.get("pool"),
        )


@dataclass(frozen=True)
class TransactionSummary:
    hash: str
    type: str
    timestamp: Optional[datetime]
    success: bool
    gas_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "type": self.type,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "success": self.success,
            "gas_used": self.gas_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionSummary":
        ts = data.get("timestamp")
        return cls(
            hash=data["hash"],
            type=data["type"],
            timestamp=datetime.fromisoformat(ts) if ts else None,
            success=bool(data["success"]),
            gas_used=data.get("gas_used"),
        )


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time view of a wallet. Immutable once built."""
    wallet_address: str
    apt_price_usd: float
    holdings: Tuple[AssetHolding, ...] = ()
    recent_transactions: Tuple[TransactionSummary, ...] = ()
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_value_usd(self) -> float:
        return sum(h.value_usd for h in self.holdings)

    @property
    def total_apt(self) -> float:
        """Native plus liquid staking amounts. LP positions are excluded."""
        return sum(h.amount for h in self.holdings if h.kind in ("native", "staking"))

    def value_by_kind(self, kind: str) -> float:
        return sum(h.value_usd for h in self.holdings if h.kind == kind)

    def allocation_percentages(self) -> Dict[str, float]:
        """Share of total value per protocol, in percent."""
        total = self.total_value_usd
        if total <= 0:
            return {}
        shares: Dict[str, float] = {}
        for h in self.holdings:
            key = h.protocol.lower()
            shares[key] = shares.get(key, 0.0) + h.value_usd / total * 100
        return shares

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "apt_price_usd": self.apt_price_usd,
            "holdings": [h.to_dict() for h in self.holdings],
            "recent_transactions": [t.to_dict() for t in self.recent_transactions],
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioSnapshot":
        return cls(
            wallet_address=data["wallet_address"],
            apt_price_usd=float(data["apt_price_usd"]),
            holdings=tuple(AssetHolding.from_dict(h) for h in data.get("holdings", [])),
            recent_transactions=tuple(
                TransactionSummary.from_dict(t) for t in data.get("recent_transactions", [])
            ),
            last_updated=datetime.fromisoformat(data["last_updated"]),
        )


@dataclass
class PerformanceAnalysis:
    """Estimated portfolio value over a trailing window."""
    history: List[Dict[str, Any]]
    start_value_usd: float
    end_value_usd: float
    absolute_change_usd: float
    percentage_change: float
    volatility_pct: float
    period_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "history": self.history,
            "start_value_usd": round(self.start_value_usd, 2),
            "end_value_usd": round(self.end_value_usd, 2),
            "absolute_change_usd": round(self.absolute_change_usd, 2),
            "percentage_change": round(self.percentage_change, 2),
            "volatility_pct": round(self.volatility_pct, 2),
            "period_days": self.period_days,
        }


def population_std(values: List[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


class PortfolioTracker:
    """Reads wallet holdings from chain and DEX position APIs."""

    async def get_portfolio(self, wallet_address: str, force_refresh: bool = False) -> PortfolioSnapshot:
        """Build a snapshot for a wallet.

        Raises:
            InvalidWalletAddressError: If the address is malformed
            AptosError: If account resources cannot be read
        """
        settings = get_settings()
        wallet_address = validate_wallet_address(wallet_address)
        cache_key = f"portfolio:{wallet_address}"

        if not force_refresh:
            cached = await cache.get(cache_key)
            if cached is not None:
                return PortfolioSnapshot.from_dict(cached)

        apt_price, resources, transactions = await asyncio.gather(
            get_market_data_service().get_apt_price(),
            self._fetch_resources(wallet_address),
            self._fetch_transactions(wallet_address),
        )

        holdings: List[AssetHolding] = []
        native = self._native_holding(resources, apt_price)
        if native is not None:
            holdings.append(native)
        holdings.extend(self._staked_holdings(resources, apt_price))
        holdings.extend(await self._liquidity_holdings(wallet_address, resources, apt_price))

        snapshot = PortfolioSnapshot(
            wallet_address=wallet_address,
            apt_price_usd=apt_price,
            holdings=tuple(holdings),
            recent_transactions=tuple(transactions),
        )

        logger.info(
            "Portfolio snapshot built",
            wallet=wallet_address,
            total_value_usd=round(snapshot.total_value_usd, 2),
            holdings=len(holdings),
        )

        await cache.set(cache_key, snapshot.to_dict(), timedelta(seconds=settings.portfolio_cache_seconds))
        return snapshot

    async def _fetch_resources(self, wallet_address: str) -> List[AptosResource]:
        try:
            return await get_aptos_client().get_account_resources(wallet_address)
        except AptosError as e:
            if e.status_code == 404:
                # Account not created on chain yet
                logger.info("Account has no resources", wallet=wallet_address)
                return []
            raise

    async def _fetch_transactions(self, wallet_address: str) -> List[TransactionSummary]:
        try:
            raw = await get_aptos_client().get_account_transactions(wallet_address)
        except AptosError as e:
            logger.warning("Failed to fetch recent transactions", wallet=wallet_address, error=str(e))
            return []
        return [self._summarize_transaction(tx) for tx in raw]

    @staticmethod
    def _summarize_transaction(tx: AptosTransaction) -> TransactionSummary:
        function_name = tx.payload.function if tx.payload else None
        return TransactionSummary(
            hash=tx.hash,
            type=classify_transaction(function_name),
            timestamp=tx.timestamp,
            success=tx.success,
            gas_used=tx.gas_used,
        )

    @staticmethod
    def _native_holding(resources: List[AptosResource], apt_price: float) -> Optional[AssetHolding]:
        store_type = coin_store_type(APTOS_COIN_TYPE)
        for resource in resources:
            if resource.type == store_type:
                amount = resource.coin_value_apt
                return AssetHolding(
                    symbol="APT",
                    protocol=NATIVE_PROTOCOL,
                    kind="native",
                    amount=amount,
                    value_usd=amount * apt_price,
                )
        return None

    @staticmethod
    def _staked_holdings(resources: List[AptosResource], apt_price: float) -> List[AssetHolding]:
        by_type = {r.type: r for r in resources}
        holdings = []
        for symbol, (protocol, coin_type) in LIQUID_STAKING_TOKENS.items():
            resource = by_type.get(coin_store_type(coin_type))
            if resource is None or resource.coin_value_octas <= 0:
                continue
            amount = resource.coin_value_apt
            holdings.append(AssetHolding(
                symbol=symbol,
                protocol=protocol,
                kind="staking",
                amount=amount,
                value_usd=amount * apt_price,
            ))
        return holdings

    async def _liquidity_holdings(
        self,
        wallet_address: str,
        resources: List[AptosResource],
        apt_price: float,
    ) -> List[AssetHolding]:
        """LP positions from DEX APIs, else a rough estimate from LP token resources."""
        settings = get_settings()
        holdings: List[AssetHolding] = []
        sources = (
            ("pancakeswap", settings.pancakeswap_positions_url),
            ("liquidswap", settings.liquidswap_positions_url),
        )

        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
            for protocol, base_url in sources:
                for position in await self._fetch_positions(client, protocol, f"{base_url}/{wallet_address}"):
                    value = position.value_usd
                    if value <= 0:
                        continue
                    holdings.append(AssetHolding(
                        symbol="LP",
                        protocol=protocol,
                        kind="liquidity",
                        amount=value / apt_price if apt_price > 0 else 0.0,
                        value_usd=value,
                        pool=position.pool_label,
                    ))

        if holdings:
            return holdings

        lp_tokens = [r for r in resources if any(m in r.type for m in LP_TOKEN_MARKERS)]
        if lp_tokens:
            value = len(lp_tokens) * ESTIMATED_LP_VALUE_USD
            logger.info("Estimating LP value from token count", wallet=wallet_address, count=len(lp_tokens))
            holdings.append(AssetHolding(
                symbol="LP",
                protocol=ESTIMATED_LP_PROTOCOL,
                kind="liquidity",
                amount=value / apt_price if apt_price > 0 else 0.0,
                value_usd=value,
                pool="estimated",
            ))
        return holdings

    @staticmethod
    async def _fetch_positions(client: httpx.AsyncClient, protocol: str, url: str):
        try:
            response = await client.get(url)
            if response.status_code != 200:
                return []
            return AmmPositionsResponse.model_validate(response.json()).positions
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.debug("No positions from DEX", protocol=protocol, error=str(e))
            return []

    async def analyze_performance(self, snapshot: PortfolioSnapshot, days: int = 30) -> PerformanceAnalysis:
        """Value history of the current APT exposure over the last ``days``."""
        prices = await get_market_data_service().get_historical_prices("aptos", days)
        total_apt = snapshot.total_apt

        history = [
            {
                "timestamp": p.timestamp.isoformat(),
                "price_usd": p.price_usd,
                "value_usd": round(total_apt * p.price_usd, 2),
            }
            for p in prices
        ]
        values = [total_apt * p.price_usd for p in prices]

        start = values[0] if values else 0.0
        end = values[-1] if values else 0.0
        change = end - start
        pct = change / start * 100 if start > 0 else 0.0

        returns = [
            (values[i] - values[i - 1]) / values[i - 1]
            for i in range(1, len(values))
            if values[i - 1] > 0
        ]

        return PerformanceAnalysis(
            history=history,
            start_value_usd=start,
            end_value_usd=end,
            absolute_change_usd=change,
            percentage_change=pct,
            volatility_pct=population_std(returns) * 100,
            period_days=days,
        )


# Lazy singleton instance
_portfolio_tracker: Optional[PortfolioTracker] = None


def get_portfolio_tracker() -> PortfolioTracker:
    """Get or create the portfolio tracker singleton."""
    global _portfolio_tracker
    if _portfolio_tracker is None:
        _portfolio_tracker = PortfolioTracker()
    return _portfolio_tracker
