"""Rule-based staking strategies and personalized staking plans.

Strategies are built from current protocol yields without an LLM:
- Conservative: the three safest protocols at 50/30/20
- Balanced: second and first by APR at 40/30, safest protocol at 30
- Aggressive: the three highest APRs at 60/25/15

A staking plan applies one of these strategies to a wallet: projected
earnings on its APT, per-protocol action items to reach the target, and
the other strategies as alternatives.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog

from app.core.config import get_settings
from app.core.contracts import PROTOCOL_CATEGORIES, OperationType, get_risk_rating
from app.services.data.market_data import (
    MarketDataService,
    ProtocolRates,
    ProtocolYield,
    default_protocol_rates,
    get_market_data_service,
)
from app.services.portfolio.portfolio_tracker import (
    PortfolioSnapshot,
    PortfolioTracker,
    get_portfolio_tracker,
    validate_wallet_address,
)
from app.services.recommendation.allocation import (
    AllocationEntry,
    RiskProfile,
    parse_risk_profile,
    weighted_apr,
)

logger = structlog.get_logger()

STRATEGY_CATEGORIES = ("staking", "lending")
MIN_STRATEGY_PROTOCOLS = 3

STRATEGY_DESCRIPTIONS: Dict[RiskProfile, Tuple[str, str]] = {
    RiskProfile.CONSERVATIVE: (
        "Conservative Strategy",
        "Focus on protocols with lower risk and established security track records",
    ),
    RiskProfile.BALANCED: (
        "Balanced Strategy",
        "Balance between yield and security across multiple protocols",
    ),
    RiskProfile.AGGRESSIVE: (
        "Aggressive Strategy",
        "Focus on maximum yield across leading protocols",
    ),
}


@dataclass
class StakingStrategy:
    """Target allocation for one risk profile with its blended APR."""
    name: str
    description: str
    risk_profile: RiskProfile
    allocation: List[AllocationEntry]
    apr: float

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "risk_profile": self.risk_profile.value,
            "apr": self.apr,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["allocation"] = [a.to_dict() for a in self.allocation]
        return data


@dataclass
class StrategySet:
    strategies: Dict[RiskProfile, StakingStrategy]
    recommended_protocol: str
    is_default: bool
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategies": {p.value: s.to_dict() for p, s in self.strategies.items()},
            "recommended_protocol": self.recommended_protocol,
            "is_default": self.is_default,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PotentialEarnings:
    monthly_usd: float = 0.0
    yearly_usd: float = 0.0
    monthly_apt: float = 0.0
    yearly_apt: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "monthly_usd": self.monthly_usd,
            "yearly_usd": self.yearly_usd,
            "monthly_apt": self.monthly_apt,
            "yearly_apt": self.yearly_apt,
        }


@dataclass
class ActionItem:
    """Move toward the target amount on one protocol. Amounts are in APT."""
    protocol: str
    action: str
    product: str
    current_apt: float
    target_apt: float
    amount_apt: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "action": self.action,
            "product": self.product,
            "current_apt": self.current_apt,
            "target_apt": self.target_apt,
            "amount_apt": self.amount_apt,
        }


@dataclass
class StakingPlan:
    """A strategy applied to one wallet."""
    wallet_address: str
    risk_profile: RiskProfile
    factors: List[str]
    strategy: StakingStrategy
    total_apt: float
    potential_earnings: PotentialEarnings
    action_items: List[ActionItem]
    alternative_strategies: List[Dict[str, Any]]
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "risk_profile": self.risk_profile.value,
            "factors": list(self.factors),
            "strategy": self.strategy.to_dict(),
            "total_apt": self.total_apt,
            "potential_earnings": self.potential_earnings.to_dict(),
            "action_items": [a.to_dict() for a in self.action_items],
            "alternative_strategies": list(self.alternative_strategies),
            "generated_at": self.generated_at.isoformat(),
        }


# ==================== Strategy construction ====================

def strategy_candidates(rates: ProtocolRates) -> List[ProtocolYield]:
    """Best staking or lending yield per protocol.

    Protocols missing from ``rates`` are filled from the built-in yields
    when fewer than three remain.
    """
    best: Dict[str, ProtocolYield] = {}
    for y in rates.yields:
        if y.category not in STRATEGY_CATEGORIES or y.apr <= 0:
            continue
        if y.protocol not in best or y.apr > best[y.protocol].apr:
            best[y.protocol] = y

    if len(best) < MIN_STRATEGY_PROTOCOLS:
        for y in default_protocol_rates().yields:
            if y.category in STRATEGY_CATEGORIES and y.protocol not in best:
                best[y.protocol] = y
    return list(best.values())


def _build_allocation(picks: List[Tuple[ProtocolYield, float]]) -> List[AllocationEntry]:
    # The same protocol can be picked twice; its shares are merged
    merged: Dict[str, AllocationEntry] = {}
    for y, percentage in picks:
        if y.protocol in merged:
            merged[y.protocol].percentage += percentage
        else:
            merged[y.protocol] = AllocationEntry(
                protocol=y.protocol,
                product=y.product,
                percentage=percentage,
                expected_apr=y.apr,
            )
    return list(merged.values())


def _strategy(profile: RiskProfile, picks: List[Tuple[ProtocolYield, float]]) -> StakingStrategy:
    name, description = STRATEGY_DESCRIPTIONS[profile]
    allocation = _build_allocation(picks)
    return StakingStrategy(
        name=name,
        description=description,
        risk_profile=profile,
        allocation=allocation,
        apr=weighted_apr(allocation),
    )


def generate_optimal_strategies(rates: ProtocolRates) -> Dict[RiskProfile, StakingStrategy]:
    """One strategy per risk profile, ranked by APR and by protocol safety.

    APR ties go to the protocol name; safety ties go to the higher APR.
    """
    candidates = strategy_candidates(rates)
    by_apr = sorted(candidates, key=lambda y: (-y.apr, y.protocol))
    by_safety = sorted(candidates, key=lambda y: (get_risk_rating(y.protocol), -y.apr, y.protocol))

    return {
        RiskProfile.CONSERVATIVE: _strategy(RiskProfile.CONSERVATIVE, [
            (by_safety[0], 50), (by_safety[1], 30), (by_safety[2], 20),
        ]),
        RiskProfile.BALANCED: _strategy(RiskProfile.BALANCED, [
            (by_apr[1], 40), (by_apr[0], 30), (by_safety[0], 30),
        ]),
        RiskProfile.AGGRESSIVE: _strategy(RiskProfile.AGGRESSIVE, [
            (by_apr[0], 60), (by_apr[1], 25), (by_apr[2], 15),
        ]),
    }


# ==================== Wallet analysis ====================

def assess_risk_profile(snapshot: PortfolioSnapshot) -> Tuple[RiskProfile, List[str]]:
    """Risk profile from what the wallet holds and how it trades.

    Returns the profile and the factors that contributed to it.
    """
    settings = get_settings()
    factors: List[str] = []
    points = 0

    if any(h.kind == "staking" and h.amount > 0 for h in snapshot.holdings):
        factors.append("Already participating in staking")
        points += 1
    if any(h.kind == "liquidity" for h in snapshot.holdings):
        factors.append("Has AMM liquidity positions")
        points += 2

    total = snapshot.total_value_usd
    if total > settings.staking_large_portfolio_usd:
        factors.append("Large portfolio value")
        points += 1
    elif total < settings.staking_small_portfolio_usd:
        factors.append("Smaller portfolio value")
        points -= 1

    if len(snapshot.recent_transactions) > settings.staking_active_trader_transactions:
        factors.append("Active trader")
        points += 1

    if points >= 2:
        return RiskProfile.AGGRESSIVE, factors
    if points <= -1:
        return RiskProfile.CONSERVATIVE, factors
    return RiskProfile.BALANCED, factors


def calculate_potential_earnings(apt_amount: float, apr: float, apt_price_usd: float) -> PotentialEarnings:
    """Projected earnings at a constant APR and APT price."""
    values = (apt_amount, apr, apt_price_usd)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) and v >= 0 for v in values):
        return PotentialEarnings()

    yearly_apt = apt_amount * apr / 100
    yearly_usd = yearly_apt * apt_price_usd
    return PotentialEarnings(
        monthly_usd=round(yearly_usd / 12, 2),
        yearly_usd=round(yearly_usd, 2),
        monthly_apt=round(yearly_apt / 12, 4),
        yearly_apt=round(yearly_apt, 4),
    )


def _action_for(protocol: str, increase: bool) -> str:
    lending = PROTOCOL_CATEGORIES.get(protocol) == "lending"
    if increase:
        return OperationType.LEND if lending else OperationType.STAKE
    return OperationType.WITHDRAW if lending else OperationType.UNSTAKE


def generate_action_items(
    snapshot: PortfolioSnapshot,
    strategy: StakingStrategy,
    min_amount_apt: Optional[float] = None,
) -> List[ActionItem]:
    """Per-protocol APT moves from the wallet's positions to the strategy.

    Targets are shares of the wallet's total APT. Staked protocols outside
    the strategy are reduced to zero. Differences under ``min_amount_apt``
    are skipped.
    """
    if min_amount_apt is None:
        min_amount_apt = get_settings().staking_min_action_apt
    total_apt = snapshot.total_apt

    current: Dict[str, float] = {}
    for h in snapshot.holdings:
        if h.kind == "staking":
            key = h.protocol.lower()
            current[key] = current.get(key, 0.0) + h.amount

    targets = [(a.protocol.lower(), a.product, a.percentage / 100 * total_apt) for a in strategy.allocation]
    in_strategy = {protocol for protocol, _, _ in targets}
    for protocol in sorted(current):
        if protocol not in in_strategy:
            targets.append((protocol, "", 0.0))

    items: List[ActionItem] = []
    for protocol, product, target in targets:
        held = current.get(protocol, 0.0)
        difference = target - held
        if abs(difference) < min_amount_apt:
            continue
        items.append(ActionItem(
            protocol=protocol,
            action=_action_for(protocol, difference > 0),
            product=product,
            current_apt=round(held, 4),
            target_apt=round(target, 4),
            amount_apt=round(abs(difference), 4),
        ))
    return items


class StakingOptimizer:
    """Builds rule-based strategies and applies them to wallets."""

    def __init__(
        self,
        market_data: Optional[MarketDataService] = None,
        portfolio_tracker: Optional[PortfolioTracker] = None,
    ):
        self._market_data = market_data
        self._portfolio_tracker = portfolio_tracker

    @property
    def market_data(self) -> MarketDataService:
        return self._market_data or get_market_data_service()

    @property
    def portfolio_tracker(self) -> PortfolioTracker:
        return self._portfolio_tracker or get_portfolio_tracker()

    async def get_strategies(self, force_refresh: bool = False) -> StrategySet:
        rates = await self.market_data.get_protocol_rates(force_refresh=force_refresh)
        return StrategySet(
            strategies=generate_optimal_strategies(rates),
            recommended_protocol=rates.recommended_protocol,
            is_default=rates.is_default,
            updated_at=rates.updated_at,
        )

    async def get_personalized_plan(
        self,
        wallet_address: str,
        risk_profile: Any = None,
        snapshot: Optional[PortfolioSnapshot] = None,
    ) -> StakingPlan:
        """Staking plan for a wallet.

        Args:
            wallet_address: Aptos account address
            risk_profile: Overrides the profile assessed from the wallet
            snapshot: Pre-fetched portfolio, fetched when omitted

        Raises:
            ValueError: On an unknown risk profile or malformed address
        """
        wallet_address = validate_wallet_address(wallet_address)
        override = parse_risk_profile(risk_profile) if risk_profile else None

        if snapshot is None:
            snapshot = await self.portfolio_tracker.get_portfolio(wallet_address)
        profile, factors = assess_risk_profile(snapshot)
        if override is not None:
            profile = override
            factors = factors + ["Risk profile chosen by user"]

        strategy_set = await self.get_strategies()
        strategy = strategy_set.strategies[profile]

        apt_price = snapshot.apt_price_usd or await self.market_data.get_apt_price()
        total_apt = round(snapshot.total_apt, 4)

        plan = StakingPlan(
            wallet_address=wallet_address,
            risk_profile=profile,
            factors=factors,
            strategy=strategy,
            total_apt=total_apt,
            potential_earnings=calculate_potential_earnings(total_apt, strategy.apr, apt_price),
            action_items=generate_action_items(snapshot, strategy),
            alternative_strategies=[
                s.summary() for p, s in strategy_set.strategies.items() if p != profile
            ],
        )
        logger.info(
            "Staking plan generated",
            wallet=wallet_address,
            risk_profile=profile.value,
            apr=strategy.apr,
            action_items=len(plan.action_items),
        )
        return plan


# Lazy singleton instance
_staking_optimizer: Optional[StakingOptimizer] = None


def get_staking_optimizer() -> StakingOptimizer:
    """Get or create the staking optimizer singleton."""
    global _staking_optimizer
    if _staking_optimizer is None:
        _staking_optimizer = StakingOptimizer()
    return _staking_optimizer
