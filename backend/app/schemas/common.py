"""Common schemas used across the API."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SchedulerStatus(BaseModel):
    """Scheduler status for health check."""
    running: bool
    job_count: int = 0
    scheduled_rebalances: int = 0
    monitored_wallets: int = 0


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    version: str
    network: str
    redis: str
    aptos_node: str
    llm_providers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    scheduler: Optional[SchedulerStatus] = None


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
