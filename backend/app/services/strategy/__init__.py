"""Rebalancing strategy for Aptos DeFi wallets.

This module implements the rebalancing decision logic:
- Drift between current and recommended allocations
- Per-wallet settings, cooldowns, history and execution locks
- Operation planning (withdrawals first, then deposits)
- Auto-rebalancer with scheduled and monitored rebalances
"""

from app.services.strategy.drift_calculator import (
    DriftAction,
    DriftEntry,
    DriftAnalysis,
    calculate_drift,
    determine_protocol_type,
)
from app.services.strategy.rebalance_state import (
    RebalanceSettings,
    RebalanceHistoryEntry,
    RebalanceStateStore,
)
from app.services.strategy.operation_planner import (
    RebalanceOperation,
    plan_operations,
)
from app.services.strategy.auto_rebalancer import (
    RebalanceError,
    RebalanceCooldownError,
    RebalanceInProgressError,
    RebalanceCheck,
    RebalanceOutcome,
    AutoRebalancer,
    get_auto_rebalancer,
)

__all__ = [
    # Drift
    "DriftAction",
    "DriftEntry",
    "DriftAnalysis",
    "calculate_drift",
    "determine_protocol_type",
    # State
    "RebalanceSettings",
    "RebalanceHistoryEntry",
    "RebalanceStateStore",
    # Planning
    "RebalanceOperation",
    "plan_operations",
    # Rebalancer
    "RebalanceError",
    "RebalanceCooldownError",
    "RebalanceInProgressError",
    "RebalanceCheck",
    "RebalanceOutcome",
    "AutoRebalancer",
    "get_auto_rebalancer",
]
