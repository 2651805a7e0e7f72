"""Recommendation endpoints: AI strategies and rule-based staking plans."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from app.schemas.recommendation import (
    CacheClearResponse,
    ModelStatusResponse,
    RecommendationRequest,
    RecommendationResponse,
    StakingPlanResponse,
    StakingStrategiesResponse,
)
from app.services.data.aptos_client import AptosError
from app.services.recommendation.ai_recommendation import get_recommendation_service
from app.services.recommendation.allocation import RiskProfile
from app.services.recommendation.staking_strategies import get_staking_optimizer

router = APIRouter()


@router.post("", response_model=RecommendationResponse)
async def create_recommendation(request: RecommendationRequest) -> RecommendationResponse:
    """Personalized allocation for a wallet.

    Falls back to the built-in strategy for the risk profile when no LLM
    answers usefully; ``source`` tells which one was returned.
    """
    service = get_recommendation_service()
    try:
        recommendation = await service.generate_recommendation(
            request.wallet_address,
            risk_profile=request.risk_profile,
            amount=request.amount,
            cached=request.use_cache,
            preserve_staked_positions=request.preserve_staked_positions,
        )
    except AptosError as e:
        raise HTTPException(status_code=502, detail=f"Aptos node error: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RecommendationResponse.model_validate(recommendation.to_dict())


@router.get("/general", response_model=RecommendationResponse)
async def get_general_recommendation(
    risk_profile: RiskProfile = Query(default=RiskProfile.BALANCED),
    refresh: bool = Query(default=False, description="Bypass the strategy cache"),
) -> RecommendationResponse:
    """Strategy for a risk profile without a connected wallet."""
    recommendation = await get_recommendation_service().get_general_strategy(
        risk_profile, bypass_cache=refresh
    )
    return RecommendationResponse.model_validate(recommendation.to_dict())


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_recommendation_cache(
    kind: str = Query(default="all", pattern="^(general|personalized|all)$"),
    wallet: Optional[str] = Query(default=None, description="Limit personalized removal to a wallet"),
) -> CacheClearResponse:
    """Drop cached strategies so the next request regenerates them."""
    try:
        removed = await get_recommendation_service().clear_cache(kind, wallet)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CacheClearResponse(kind=kind, removed=removed, count=len(removed))


@router.get("/models", response_model=ModelStatusResponse)
async def get_models() -> ModelStatusResponse:
    """LLM providers in the order they are tried."""
    return ModelStatusResponse(providers=get_recommendation_service().get_available_models())


@router.get("/staking/strategies", response_model=StakingStrategiesResponse)
async def get_staking_strategies(
    refresh: bool = Query(default=False, description="Refetch protocol yields"),
) -> StakingStrategiesResponse:
    """Rule-based strategies for every risk profile, from current yields."""
    strategy_set = await get_staking_optimizer().get_strategies(force_refresh=refresh)
    return StakingStrategiesResponse.model_validate(strategy_set.to_dict())


@router.get("/staking/{wallet}", response_model=StakingPlanResponse)
async def get_staking_plan(
    wallet: str,
    risk_profile: Optional[RiskProfile] = Query(
        default=None, description="Override the profile assessed from the wallet"
    ),
) -> StakingPlanResponse:
    """Rule-based staking plan with projected earnings and action items."""
    try:
        plan = await get_staking_optimizer().get_personalized_plan(wallet, risk_profile=risk_profile)
    except AptosError as e:
        raise HTTPException(status_code=502, detail=f"Aptos node error: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StakingPlanResponse.model_validate(plan.to_dict())
