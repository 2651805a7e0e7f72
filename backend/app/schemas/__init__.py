"""Pydantic schemas for API request/response models."""

from app.schemas.common import (
    SchedulerStatus,
    HealthResponse,
    ErrorResponse,
)
from app.schemas.portfolio import (
    HoldingResponse,
    PortfolioResponse,
    PerformanceResponse,
)
from app.schemas.recommendation import (
    RecommendationRequest,
    RecommendationResponse,
    CacheClearResponse,
    ModelStatusResponse,
    StakingStrategiesResponse,
    StakingPlanResponse,
)
from app.schemas.rebalance import (
    RebalanceCheckResponse,
    RebalanceExecuteRequest,
    RebalanceExecuteResponse,
    RebalanceSettingsResponse,
    RebalanceSettingsUpdate,
    RebalanceHistoryResponse,
    ScheduleRebalanceRequest,
    MonitoringRequest,
)

__all__ = [
    # Common
    "SchedulerStatus",
    "HealthResponse",
    "ErrorResponse",
    # Portfolio
    "HoldingResponse",
    "PortfolioResponse",
    "PerformanceResponse",
    # Recommendations
    "RecommendationRequest",
    "RecommendationResponse",
    "CacheClearResponse",
    "ModelStatusResponse",
    "StakingStrategiesResponse",
    "StakingPlanResponse",
    # Rebalance
    "RebalanceCheckResponse",
    "RebalanceExecuteRequest",
    "RebalanceExecuteResponse",
    "RebalanceSettingsResponse",
    "RebalanceSettingsUpdate",
    "RebalanceHistoryResponse",
    "ScheduleRebalanceRequest",
    "MonitoringRequest",
]
