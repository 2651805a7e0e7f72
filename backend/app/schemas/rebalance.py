"""Auto-rebalance schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.services.recommendation.allocation import RiskProfile


class DriftEntryResponse(BaseModel):
    protocol: str
    type: str
    current_percentage: float
    target_percentage: float
    drift: float
    action: str


class RebalanceCheckResponse(BaseModel):
    """Whether a wallet should be rebalanced now."""
    wallet_address: str
    needs_rebalancing: bool
    risk_profile: str
    max_drift: float
    avg_drift: float
    drift_details: List[DriftEntryResponse] = Field(default_factory=list)
    volatility: float
    is_volatile: bool
    threshold: float
    last_rebalanced: Optional[datetime] = None
    cooldown_remaining_seconds: float = 0.0


class RebalanceExecuteRequest(BaseModel):
    force: bool = Field(default=False, description="Skip cooldown and drift threshold")
    risk_profile: Optional[RiskProfile] = None


class RebalanceOperationResponse(BaseModel):
    protocol: str
    operation_type: str
    amount: float
    amount_usd: float
    contract_address: str
    function_name: str


class FailedOperationResponse(BaseModel):
    operation: RebalanceOperationResponse
    error: str


class RebalanceExecuteResponse(BaseModel):
    """Result of an executed or skipped rebalance."""
    wallet_address: str
    executed: bool
    success: bool
    message: str
    risk_profile: str
    max_drift: float
    drift_details: List[DriftEntryResponse] = Field(default_factory=list)
    operations: List[RebalanceOperationResponse] = Field(default_factory=list)
    successful_operations: List[Dict[str, Any]] = Field(default_factory=list)
    failed_operations: List[FailedOperationResponse] = Field(default_factory=list)
    timestamp: datetime


class RebalanceSettingsResponse(BaseModel):
    min_rebalance_threshold: float
    max_slippage: float
    cooldown_period_seconds: int
    max_operations_per_rebalance: int
    volatility_threshold: float
    preserve_staked_positions: bool
    risk_profile: Optional[str] = None


class RebalanceSettingsUpdate(BaseModel):
    """Partial settings update. Numeric values are clamped to range."""
    min_rebalance_threshold: Optional[float] = None
    max_slippage: Optional[float] = None
    cooldown_period: Optional[float] = Field(
        default=None,
        description="Hours when <= 1000, otherwise seconds; at least one hour",
    )
    max_operations_per_rebalance: Optional[int] = None
    volatility_threshold: Optional[float] = None
    preserve_staked_positions: Optional[bool] = None
    risk_profile: Optional[RiskProfile] = None


class RebalanceHistoryEntryResponse(BaseModel):
    timestamp: datetime
    success: bool
    operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    drift_before: float = 0.0
    risk_profile: Optional[str] = None
    error: Optional[str] = None


class RebalanceHistoryResponse(BaseModel):
    wallet_address: str
    entries: List[RebalanceHistoryEntryResponse] = Field(default_factory=list)


class ScheduleRebalanceRequest(BaseModel):
    delay_seconds: Optional[float] = Field(default=None, ge=0)
    only_if_needed: bool = False
    force: bool = False
    risk_profile: Optional[RiskProfile] = None


class MonitoringRequest(BaseModel):
    check_interval_hours: Optional[float] = Field(default=None, gt=0)
