"""AI recommendation schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.services.recommendation.allocation import RiskProfile


class RecommendationRequest(BaseModel):
    """Personalized recommendation request."""
    wallet_address: str
    risk_profile: RiskProfile = RiskProfile.BALANCED
    amount: float = Field(default=100.0, gt=0, description="Amount to allocate, in APT")
    use_cache: bool = True
    preserve_staked_positions: bool = True


class AllocationEntryResponse(BaseModel):
    protocol: str
    product: str
    percentage: float
    expected_apr: float
    amount: Optional[float] = None


class RecommendationResponse(BaseModel):
    """Target allocation with rationale, risks and implementation steps."""
    allocation: List[AllocationEntryResponse]
    title: str
    summary: str
    total_apr: float
    rationale: str
    risks: List[str] = Field(default_factory=list)
    mitigations: List[str] = Field(default_factory=list)
    steps: List[str] = Field(default_factory=list)
    risk_profile: str
    source: str
    type: str
    generated_at: datetime
    wallet_address: Optional[str] = None
    total_investment: Optional[float] = None
    current_allocation: List[Dict[str, Any]] = Field(default_factory=list)


class CacheClearResponse(BaseModel):
    kind: str
    removed: List[str] = Field(default_factory=list)
    count: int = 0


class ModelStatusResponse(BaseModel):
    """Configured LLM providers in fallback order."""
    providers: Dict[str, Dict[str, Any]]


class StakingStrategySummary(BaseModel):
    name: str
    description: str
    risk_profile: str
    apr: float


class StakingStrategyResponse(StakingStrategySummary):
    """Rule-based allocation for one risk profile."""
    allocation: List[AllocationEntryResponse]


class StakingStrategiesResponse(BaseModel):
    """Rule-based strategies for every risk profile."""
    strategies: Dict[str, StakingStrategyResponse]
    recommended_protocol: str
    is_default: bool
    updated_at: datetime


class PotentialEarningsResponse(BaseModel):
    monthly_usd: float
    yearly_usd: float
    monthly_apt: float
    yearly_apt: float


class StakingActionItemResponse(BaseModel):
    protocol: str
    action: str
    product: str
    current_apt: float
    target_apt: float
    amount_apt: float


class StakingPlanResponse(BaseModel):
    """Rule-based strategy applied to a wallet."""
    wallet_address: str
    risk_profile: str
    factors: List[str] = Field(default_factory=list)
    strategy: StakingStrategyResponse
    total_apt: float
    potential_earnings: PotentialEarningsResponse
    action_items: List[StakingActionItemResponse] = Field(default_factory=list)
    alternative_strategies: List[StakingStrategySummary] = Field(default_factory=list)
    generated_at: datetime
