"""AI recommendation service.

Generates target allocations for a risk profile by prompting an LLM with
current protocol yields, market conditions and (for personalized
strategies) the wallet's current allocation. Any failure along the LLM
path yields the hardcoded fallback strategy for the risk profile, so
callers always receive a usable allocation.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.redis import cache
from app.services.data.market_data import MarketDataService, ProtocolYield, get_market_data_service
from app.services.portfolio.portfolio_tracker import (
    PortfolioSnapshot,
    PortfolioTracker,
    get_portfolio_tracker,
    validate_wallet_address,
)
from app.services.recommendation.allocation import (
    LLMRecommendation,
    Recommendation,
    RecommendationParseError,
    RecommendationType,
    RiskProfile,
    extract_json,
    fallback_recommendation,
    parse_risk_profile,
    post_process,
)
from app.services.recommendation.llm_providers import LLMProviderChain, LLMProviderError
from app.services.recommendation.prompts import build_general_prompt, build_personalized_prompt

logger = structlog.get_logger()

GENERAL_CACHE_PREFIX = "ai:general:strategy"
PERSONALIZED_CACHE_PREFIX = "ai:personalized:strategy"

# Staking APR ceiling for protocols offered to conservative profiles
CONSERVATIVE_MAX_STAKING_APR = 8.0


def current_allocation_from_snapshot(snapshot: PortfolioSnapshot) -> List[Dict[str, Any]]:
    """Per-holding share of the wallet, for prompts and responses."""
    total = snapshot.total_value_usd
    if total <= 0:
        return []
    return [
        {
            "asset": h.symbol,
            "protocol": h.protocol,
            "percentage": round(h.value_usd / total * 100, 2),
            "value_usd": round(h.value_usd, 2),
        }
        for h in snapshot.holdings
        if h.value_usd > 0
    ]


def filter_yields_for_profile(yields: List[ProtocolYield], risk_profile: RiskProfile) -> List[ProtocolYield]:
    """Protocols offered to a risk profile in general strategies."""
    if risk_profile == RiskProfile.CONSERVATIVE:
        excluded = {
            y.protocol for y in yields
            if y.category == "staking" and y.apr > CONSERVATIVE_MAX_STAKING_APR
        }
        return [y for y in yields if y.protocol not in excluded]
    if risk_profile == RiskProfile.AGGRESSIVE:
        return [y for y in yields if y.protocol != "echo"]
    return list(yields)


class RecommendationService:
    """Builds general and personalized allocation strategies."""

    def __init__(
        self,
        llm: Optional[LLMProviderChain] = None,
        market_data: Optional[MarketDataService] = None,
        portfolio_tracker: Optional[PortfolioTracker] = None,
    ):
        self.llm = llm or LLMProviderChain()
        self._market_data = market_data
        self._portfolio_tracker = portfolio_tracker

    @property
    def market_data(self) -> MarketDataService:
        return self._market_data or get_market_data_service()

    @property
    def portfolio_tracker(self) -> PortfolioTracker:
        return self._portfolio_tracker or get_portfolio_tracker()

    @staticmethod
    def personalized_cache_key(wallet_address: str, risk_profile: RiskProfile, amount: float) -> str:
        return f"{PERSONALIZED_CACHE_PREFIX}:{wallet_address}:{risk_profile.value}:{round(amount, 2)}"

    async def generate_recommendation(
        self,
        wallet_address: str,
        risk_profile: Any = RiskProfile.BALANCED,
        amount: float = 100.0,
        cached: bool = True,
        snapshot: Optional[PortfolioSnapshot] = None,
        preserve_staked_positions: bool = True,
    ) -> Recommendation:
        """Personalized recommendation for a wallet.

        Args:
            wallet_address: Aptos account address
            risk_profile: conservative, balanced or aggressive
            amount: Amount to allocate; per-entry amounts are derived from it
            cached: Reuse a recommendation cached within the TTL
            snapshot: Pre-fetched portfolio, fetched when omitted
            preserve_staked_positions: Passed to the prompt as a user preference

        Raises:
            ValueError: On an unknown risk profile or malformed address
        """
        settings = get_settings()
        profile = parse_risk_profile(risk_profile)
        wallet_address = validate_wallet_address(wallet_address)
        cache_key = self.personalized_cache_key(wallet_address, profile, amount)

        if cached:
            hit = await cache.get(cache_key)
            if hit is not None:
                logger.info("Using cached personalized strategy", wallet=wallet_address, risk_profile=profile.value)
                return Recommendation.from_dict(hit)

        if snapshot is None:
            snapshot = await self.portfolio_tracker.get_portfolio(wallet_address)
        current_allocation = current_allocation_from_snapshot(snapshot)

        try:
            overview = await self.market_data.get_market_overview()
            rates = overview.protocol_rates
            prompt = build_personalized_prompt(
                yields=rates.yields,
                overview=overview,
                risk_profile=profile,
                current_allocation=current_allocation,
                total_value_usd=snapshot.total_value_usd,
                amount=amount,
                preserve_staked_positions=preserve_staked_positions,
            )
            recommendation = await self._run_llm(
                prompt, rates.protocols, profile, RecommendationType.PERSONALIZED, amount
            )
        except (LLMProviderError, RecommendationParseError) as e:
            logger.warning(
                "Personalized strategy generation failed, using fallback",
                wallet=wallet_address,
                risk_profile=profile.value,
                error=str(e),
            )
            return fallback_recommendation(
                profile,
                RecommendationType.PERSONALIZED,
                amount=amount,
                wallet_address=wallet_address,
                current_allocation=current_allocation,
            )

        recommendation.wallet_address = wallet_address
        recommendation.current_allocation = current_allocation

        await cache.set(
            cache_key,
            recommendation.to_dict(),
            timedelta(seconds=settings.personalized_strategy_cache_seconds),
        )
        logger.info(
            "Personalized strategy generated",
            wallet=wallet_address,
            risk_profile=profile.value,
            total_apr=recommendation.total_apr,
        )
        return recommendation

    async def get_general_strategy(
        self,
        risk_profile: Any = RiskProfile.BALANCED,
        bypass_cache: bool = False,
    ) -> Recommendation:
        """Strategy for users without a connected wallet."""
        settings = get_settings()
        profile = parse_risk_profile(risk_profile)
        cache_key = f"{GENERAL_CACHE_PREFIX}:{profile.value}"

        if not bypass_cache:
            hit = await cache.get(cache_key)
            if hit is not None:
                return Recommendation.from_dict(hit)

        try:
            overview = await self.market_data.get_market_overview()
            yields = filter_yields_for_profile(overview.protocol_rates.yields, profile)
            prompt = build_general_prompt(yields, overview, profile)
            known = {y.protocol for y in yields}
            recommendation = await self._run_llm(prompt, known, profile, RecommendationType.GENERAL)
        except (LLMProviderError, RecommendationParseError) as e:
            logger.warning(
                "General strategy generation failed, using fallback",
                risk_profile=profile.value,
                error=str(e),
            )
            return fallback_recommendation(profile, RecommendationType.GENERAL)

        await cache.set(
            cache_key,
            recommendation.to_dict(),
            timedelta(seconds=settings.general_strategy_cache_seconds),
        )
        return recommendation

    async def _run_llm(
        self,
        prompt: str,
        known_protocols,
        profile: RiskProfile,
        rec_type: RecommendationType,
        amount: Optional[float] = None,
    ) -> Recommendation:
        text = await self.llm.complete(prompt)
        data = extract_json(text)
        try:
            raw = LLMRecommendation.model_validate(data)
        except ValidationError as e:
            logger.debug("Raw LLM response", text=text[:1000])
            raise RecommendationParseError(f"LLM response failed validation: {e}") from e
        return post_process(raw, known_protocols, profile, rec_type, amount)

    async def clear_cache(self, kind: str = "all", wallet_address: Optional[str] = None) -> List[str]:
        """Remove cached strategies.

        Args:
            kind: general, personalized or all
            wallet_address: Restrict personalized removal to one wallet

        Returns:
            Removed cache keys
        """
        if kind not in ("general", "personalized", "all"):
            raise ValueError(f"Invalid cache kind {kind!r}")

        removed: List[str] = []
        if kind in ("general", "all"):
            removed.extend(await cache.delete_pattern(f"{GENERAL_CACHE_PREFIX}:*"))
        if kind in ("personalized", "all"):
            if wallet_address:
                pattern = f"{PERSONALIZED_CACHE_PREFIX}:{validate_wallet_address(wallet_address)}:*"
            else:
                pattern = f"{PERSONALIZED_CACHE_PREFIX}:*"
            removed.extend(await cache.delete_pattern(pattern))

        logger.info("Recommendation cache cleared", kind=kind, count=len(removed))
        return removed

    def get_available_models(self) -> Dict[str, Dict[str, Any]]:
        return self.llm.describe()


# Lazy singleton instance
_recommendation_service: Optional[RecommendationService] = None


def get_recommendation_service() -> RecommendationService:
    """Get or create the recommendation service singleton."""
    global _recommendation_service
    if _recommendation_service is None:
        _recommendation_service = RecommendationService()
    return _recommendation_service
