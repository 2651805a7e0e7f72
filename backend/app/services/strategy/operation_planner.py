"""Turns drift into an ordered list of on-chain operations.

Withdrawals come first so that freed APT can fund the deposits that
follow. Amounts are in APT at the snapshot's price.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from app.core.contracts import OperationType, get_contract_address, get_function_name
from app.services.portfolio.portfolio_tracker import NATIVE_PROTOCOL, PortfolioSnapshot
from app.services.strategy.drift_calculator import DriftAction, DriftAnalysis, DriftEntry
from app.services.strategy.rebalance_state import RebalanceSettings

logger = structlog.get_logger()

MIN_OPERATION_APT = 0.01

WITHDRAW_OPERATIONS = {
    "staking": OperationType.UNSTAKE,
    "lending": OperationType.WITHDRAW,
    "liquidity": OperationType.REMOVE_LIQUIDITY,
}

DEPOSIT_OPERATIONS = {
    "staking": OperationType.STAKE,
    "lending": OperationType.LEND,
    "liquidity": OperationType.ADD_LIQUIDITY,
}


@dataclass
class RebalanceOperation:
    protocol: str
    operation_type: str
    amount: float
    amount_usd: float
    contract_address: str
    function_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "operation_type": self.operation_type,
            "amount": self.amount,
            "amount_usd": self.amount_usd,
            "contract_address": self.contract_address,
            "function_name": self.function_name,
        }


def _build_operation(
    entry: DriftEntry,
    operation_type: str,
    total_value_usd: float,
    apt_price_usd: float,
) -> Optional[RebalanceOperation]:
    value_usd = entry.drift / 100 * total_value_usd
    amount = round(value_usd / apt_price_usd, 4)
    if amount < MIN_OPERATION_APT:
        return None

    address = get_contract_address(entry.protocol)
    if not address:
        logger.warning("No contract address for protocol, skipping", protocol=entry.protocol)
        return None

    return RebalanceOperation(
        protocol=entry.protocol,
        operation_type=operation_type,
        amount=amount,
        amount_usd=round(value_usd, 2),
        contract_address=address,
        function_name=get_function_name(entry.protocol, operation_type),
    )


def plan_operations(
    snapshot: PortfolioSnapshot,
    drift: DriftAnalysis,
    settings: RebalanceSettings,
) -> List[RebalanceOperation]:
    """Withdrawals then deposits for every entry past the drift threshold.

    The list is not capped here; the caller applies
    ``max_operations_per_rebalance``.
    """
    total = snapshot.total_value_usd
    price = snapshot.apt_price_usd
    if total <= 0 or price <= 0:
        return []

    threshold = settings.min_rebalance_threshold
    operations: List[RebalanceOperation] = []

    for entry in drift.drifts:
        if entry.action != DriftAction.DECREASE or entry.drift < threshold:
            continue
        if entry.protocol == NATIVE_PROTOCOL or entry.type == "native":
            continue
        if entry.type == "staking" and settings.preserve_staked_positions:
            continue
        op_type = WITHDRAW_OPERATIONS.get(entry.type)
        if op_type is None:
            continue
        op = _build_operation(entry, op_type, total, price)
        if op:
            operations.append(op)

    for entry in drift.drifts:
        if entry.action not in (DriftAction.INCREASE, DriftAction.ADD) or entry.drift < threshold:
            continue
        op_type = DEPOSIT_OPERATIONS.get(entry.type)
        if op_type is None:
            continue
        op = _build_operation(entry, op_type, total, price)
        if op:
            operations.append(op)

    return operations
