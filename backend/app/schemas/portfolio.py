"""Portfolio schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class HoldingResponse(BaseModel):
    """One wallet position."""
    symbol: str
    protocol: str
    kind: str
    amount: float
    value_usd: float
    pool: Optional[str] = None


class TransactionResponse(BaseModel):
    """Classified recent transaction."""
    hash: str
    type: str
    timestamp: Optional[datetime] = None
    success: bool
    gas_used: Optional[int] = None


class PortfolioResponse(BaseModel):
    """Wallet portfolio snapshot."""
    wallet_address: str
    apt_price_usd: float
    total_value_usd: float
    total_apt: float
    holdings: List[HoldingResponse] = Field(default_factory=list)
    allocation: Dict[str, float] = Field(
        default_factory=dict,
        description="Share of total value per protocol, in percent",
    )
    recent_transactions: List[TransactionResponse] = Field(default_factory=list)
    last_updated: datetime


class PerformancePoint(BaseModel):
    timestamp: datetime
    price_usd: float
    value_usd: float


class PerformanceResponse(BaseModel):
    """Estimated value of the wallet's APT exposure over time."""
    wallet_address: str
    period_days: int
    start_value_usd: float
    end_value_usd: float
    absolute_change_usd: float
    percentage_change: float
    volatility_pct: float
    history: List[PerformancePoint] = Field(default_factory=list)
