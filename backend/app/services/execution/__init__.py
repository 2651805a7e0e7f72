# Execution services module
from app.services.execution.transaction_manager import (
    ExecutionResult,
    FailedOperation,
    PayloadDraftExecutor,
    TransactionExecutor,
)

__all__ = [
    "ExecutionResult",
    "FailedOperation",
    "PayloadDraftExecutor",
    "TransactionExecutor",
]
