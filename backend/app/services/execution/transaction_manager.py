"""Transaction execution for rebalance operations.

Signing stays with the wallet owner, so the default executor does not
submit anything on-chain. It drafts one entry-function payload per
operation for the wallet to sign and rejects operations that cannot be
expressed as a payload.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Protocol

import structlog

from app.core.contracts import OCTAS_PER_APT

if TYPE_CHECKING:
    from app.services.strategy.operation_planner import RebalanceOperation

logger = structlog.get_logger()

ENTRY_FUNCTION_PAYLOAD = "entry_function_payload"
PENDING_SIGNATURE = "pending_signature"


@dataclass
class FailedOperation:
    operation: "RebalanceOperation"
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation.to_dict(), "error": self.error}


@dataclass
class ExecutionResult:
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[FailedOperation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": list(self.successful),
            "failed": [f.to_dict() for f in self.failed],
        }


class TransactionExecutor(Protocol):
    async def execute_operations(
        self, wallet_address: str, operations: List["RebalanceOperation"]
    ) -> ExecutionResult:
        ...


def build_entry_function_payload(operation: "RebalanceOperation") -> Dict[str, Any]:
    """Aptos entry-function payload moving ``operation.amount`` APT.

    Raises:
        ValueError: If the operation has no target or a non-positive amount
    """
    if not operation.contract_address:
        raise ValueError(f"No contract address for {operation.protocol}")
    if not operation.function_name.startswith("::"):
        raise ValueError(f"Malformed function name {operation.function_name!r}")

    octas = int(round(operation.amount * OCTAS_PER_APT))
    if octas <= 0:
        raise ValueError(f"Amount must be positive, got {operation.amount}")

    return {
        "type": ENTRY_FUNCTION_PAYLOAD,
        "function": f"{operation.contract_address}{operation.function_name}",
        "type_arguments": [],
        "arguments": [str(octas)],
    }


class PayloadDraftExecutor:
    """Drafts payloads for wallet-side signing."""

    async def execute_operations(
        self, wallet_address: str, operations: List["RebalanceOperation"]
    ) -> ExecutionResult:
        result = ExecutionResult()
        for operation in operations:
            try:
                payload = build_entry_function_payload(operation)
            except ValueError as e:
                logger.warning(
                    "Rebalance operation rejected",
                    wallet=wallet_address,
                    protocol=operation.protocol,
                    operation_type=operation.operation_type,
                    error=str(e),
                )
                result.failed.append(FailedOperation(operation=operation, error=str(e)))
                continue

            result.successful.append({
                "operation": operation.to_dict(),
                "payload": payload,
                "status": PENDING_SIGNATURE,
            })

        logger.info(
            "Rebalance payloads drafted",
            wallet=wallet_address,
            drafted=len(result.successful),
            failed=len(result.failed),
        )
        return result
