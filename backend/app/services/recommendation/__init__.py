# Recommendation services module
from app.services.recommendation.ai_recommendation import (
    RecommendationService,
    get_recommendation_service,
)
from app.services.recommendation.allocation import (
    AllocationEntry,
    Recommendation,
    RiskProfile,
)
from app.services.recommendation.staking_strategies import (
    StakingOptimizer,
    get_staking_optimizer,
)
from app.services.recommendation.llm_providers import (
    LLMProviderChain,
    LLMProviderError,
    LLMUnavailableError,
)

__all__ = [
    "RecommendationService",
    "get_recommendation_service",
    "AllocationEntry",
    "Recommendation",
    "RiskProfile",
    "StakingOptimizer",
    "get_staking_optimizer",
    "LLMProviderChain",
    "LLMProviderError",
    "LLMUnavailableError",
]
