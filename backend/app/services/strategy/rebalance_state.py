"""Per-wallet rebalance settings, history and execution locks.

State lives in process memory. A restart resets every wallet to the
configured defaults and forgets history, cooldowns and monitoring.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import structlog

from app.core.config import get_settings

logger = structlog.get_logger()

MIN_THRESHOLD_PCT = 1.0
MAX_THRESHOLD_PCT = 20.0
MIN_SLIPPAGE_PCT = 0.1
MAX_SLIPPAGE_PCT = 5.0
MIN_OPERATIONS = 1
MAX_OPERATIONS = 10
MIN_COOLDOWN_SECONDS = 3600

# Cooldown inputs at or below this are read as hours, above as seconds
COOLDOWN_HOURS_CUTOFF = 1000


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def cooldown_seconds(value: float) -> int:
    """Normalize a cooldown input to seconds, at least one hour."""
    seconds = value * 3600 if value <= COOLDOWN_HOURS_CUTOFF else value
    return int(max(MIN_COOLDOWN_SECONDS, seconds))


@dataclass
class RebalanceSettings:
    min_rebalance_threshold: float
    max_slippage: float
    cooldown_period_seconds: int
    max_operations_per_rebalance: int
    volatility_threshold: float
    preserve_staked_positions: bool
    risk_profile: Optional[str] = None

    @classmethod
    def from_config(cls) -> "RebalanceSettings":
        settings = get_settings()
        return cls(
            min_rebalance_threshold=settings.rebalance_min_drift_pct,
            max_slippage=settings.rebalance_max_slippage_pct,
            cooldown_period_seconds=int(settings.rebalance_cooldown_hours * 3600),
            max_operations_per_rebalance=settings.rebalance_max_operations,
            volatility_threshold=settings.rebalance_volatility_threshold_pct,
            preserve_staked_positions=settings.rebalance_preserve_staked_positions,
        )

    def apply(self, updates: Dict[str, Any]) -> "RebalanceSettings":
        """Apply a partial update with every numeric field clamped to range.

        Unknown keys and ``None`` values are ignored.
        """
        for key, value in updates.items():
            if value is None:
                continue
            if key == "min_rebalance_threshold":
                self.min_rebalance_threshold = _clamp(float(value), MIN_THRESHOLD_PCT, MAX_THRESHOLD_PCT)
            elif key == "max_slippage":
                self.max_slippage = _clamp(float(value), MIN_SLIPPAGE_PCT, MAX_SLIPPAGE_PCT)
            elif key == "cooldown_period":
                self.cooldown_period_seconds = cooldown_seconds(float(value))
            elif key == "max_operations_per_rebalance":
                self.max_operations_per_rebalance = int(_clamp(int(value), MIN_OPERATIONS, MAX_OPERATIONS))
            elif key == "volatility_threshold":
                self.volatility_threshold = max(0.0, float(value))
            elif key == "preserve_staked_positions":
                self.preserve_staked_positions = bool(value)
            elif key == "risk_profile":
                self.risk_profile = str(value).lower()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_rebalance_threshold": self.min_rebalance_threshold,
            "max_slippage": self.max_slippage,
            "cooldown_period_seconds": self.cooldown_period_seconds,
            "max_operations_per_rebalance": self.max_operations_per_rebalance,
            "volatility_threshold": self.volatility_threshold,
            "preserve_staked_positions": self.preserve_staked_positions,
            "risk_profile": self.risk_profile,
        }


@dataclass
class RebalanceHistoryEntry:
    """Record of one attempted rebalance."""
    timestamp: datetime
    success: bool
    operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    drift_before: float = 0.0
    risk_profile: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "operations": self.operations,
            "successful_operations": self.successful_operations,
            "failed_operations": self.failed_operations,
            "drift_before": round(self.drift_before, 4),
            "risk_profile": self.risk_profile,
            "error": self.error,
        }


@dataclass
class MonitoringInfo:
    started_at: datetime
    check_interval_hours: float


@dataclass
class WalletRebalanceState:
    settings: RebalanceSettings
    history: Deque[RebalanceHistoryEntry]
    last_rebalance_at: Optional[datetime] = None
    monitoring: Optional[MonitoringInfo] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RebalanceStateStore:
    """In-memory state keyed by wallet address."""

    def __init__(self, history_size: Optional[int] = None):
        self.history_size = history_size or get_settings().rebalance_history_size
        self._wallets: Dict[str, WalletRebalanceState] = {}

    def __contains__(self, wallet_address: str) -> bool:
        return wallet_address in self._wallets

    def _new_state(self) -> WalletRebalanceState:
        return WalletRebalanceState(
            settings=RebalanceSettings.from_config(),
            history=deque(maxlen=self.history_size),
        )

    def get(self, wallet_address: str) -> WalletRebalanceState:
        """State for a wallet, registering it on first use."""
        state = self._wallets.get(wallet_address)
        if state is None:
            state = self._new_state()
            self._wallets[wallet_address] = state
        return state

    def peek(self, wallet_address: str) -> WalletRebalanceState:
        """State for a wallet without registering it.

        Unknown wallets get a detached default state, so changes made to
        it are not kept.
        """
        return self._wallets.get(wallet_address) or self._new_state()

    def update_settings(self, wallet_address: str, updates: Dict[str, Any]) -> RebalanceSettings:
        settings = self.get(wallet_address).settings.apply(updates)
        logger.info("Rebalance settings updated", wallet=wallet_address, **settings.to_dict())
        return settings

    def record(
        self,
        wallet_address: str,
        entry: RebalanceHistoryEntry,
        mark_rebalanced: bool = True,
    ) -> None:
        """Append a history entry; the oldest is dropped past capacity.

        With ``mark_rebalanced`` the entry timestamp starts the cooldown.
        """
        state = self.get(wallet_address)
        state.history.append(entry)
        if mark_rebalanced:
            state.last_rebalance_at = entry.timestamp

    def history(self, wallet_address: str, limit: Optional[int] = None) -> List[RebalanceHistoryEntry]:
        """History entries, most recent first."""
        entries = list(reversed(self.peek(wallet_address).history))
        return entries[:limit] if limit else entries

    def cooldown_remaining(self, wallet_address: str, now: Optional[datetime] = None) -> float:
        """Seconds until the wallet may rebalance again, 0 when allowed."""
        state = self.peek(wallet_address)
        if state.last_rebalance_at is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        elapsed = (now - state.last_rebalance_at).total_seconds()
        return max(0.0, state.settings.cooldown_period_seconds - elapsed)
