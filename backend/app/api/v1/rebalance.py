"""Auto-rebalance endpoints.

Precondition failures (cooldown, rebalance in progress) map to 409,
malformed input to 400 and Aptos node failures to 502.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from app.schemas.rebalance import (
    MonitoringRequest,
    RebalanceCheckResponse,
    RebalanceExecuteRequest,
    RebalanceExecuteResponse,
    RebalanceHistoryResponse,
    RebalanceSettingsResponse,
    RebalanceSettingsUpdate,
    ScheduleRebalanceRequest,
)
from app.services.data.aptos_client import AptosError
from app.services.portfolio.portfolio_tracker import validate_wallet_address
from app.services.recommendation.allocation import RiskProfile
from app.services.strategy.auto_rebalancer import (
    RebalanceCooldownError,
    RebalanceError,
    get_auto_rebalancer,
)

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, RebalanceCooldownError):
        return HTTPException(
            status_code=409,
            detail={"error": e.message, "remaining_seconds": round(e.remaining_seconds, 1)},
        )
    if isinstance(e, RebalanceError):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, AptosError):
        return HTTPException(status_code=502, detail=f"Aptos node error: {e}")
    return HTTPException(status_code=400, detail=str(e))


@router.get("/{wallet}/check", response_model=RebalanceCheckResponse)
async def check_rebalance(
    wallet: str,
    risk_profile: Optional[RiskProfile] = Query(default=None),
) -> RebalanceCheckResponse:
    """Drift against the recommended allocation and whether to rebalance."""
    try:
        check = await get_auto_rebalancer().check_rebalance_needed(wallet, risk_profile)
    except (AptosError, ValueError) as e:
        raise _http_error(e)
    return RebalanceCheckResponse.model_validate(check.to_dict())


@router.post("/{wallet}/execute", response_model=RebalanceExecuteResponse)
async def execute_rebalance(
    wallet: str,
    request: Optional[RebalanceExecuteRequest] = None,
) -> RebalanceExecuteResponse:
    """Plan and execute operations that move the wallet toward target.

    Failed operations are listed in ``failed_operations``; the request
    itself still succeeds.
    """
    request = request or RebalanceExecuteRequest()
    try:
        outcome = await get_auto_rebalancer().execute_rebalance(
            wallet, force=request.force, risk_profile=request.risk_profile
        )
    except (RebalanceError, AptosError, ValueError) as e:
        raise _http_error(e)
    return RebalanceExecuteResponse.model_validate(outcome.to_dict())


@router.get("/{wallet}/settings", response_model=RebalanceSettingsResponse)
async def get_rebalance_settings(wallet: str) -> RebalanceSettingsResponse:
    try:
        settings = get_auto_rebalancer().get_rebalance_settings(wallet)
    except ValueError as e:
        raise _http_error(e)
    return RebalanceSettingsResponse.model_validate(settings.to_dict())


@router.put("/{wallet}/settings", response_model=RebalanceSettingsResponse)
async def update_rebalance_settings(
    wallet: str,
    update: RebalanceSettingsUpdate,
) -> RebalanceSettingsResponse:
    """Partial update; out-of-range numbers are clamped, not rejected."""
    try:
        settings = get_auto_rebalancer().set_rebalance_settings(
            wallet, **update.model_dump(exclude_none=True)
        )
    except ValueError as e:
        raise _http_error(e)
    return RebalanceSettingsResponse.model_validate(settings.to_dict())


@router.get("/{wallet}/history", response_model=RebalanceHistoryResponse)
async def get_rebalance_history(
    wallet: str,
    limit: int = Query(default=10, ge=1, le=50),
) -> RebalanceHistoryResponse:
    """Most recent rebalance attempts first."""
    try:
        address = validate_wallet_address(wallet)
        entries = get_auto_rebalancer().get_rebalance_history(address, limit)
    except ValueError as e:
        raise _http_error(e)
    return RebalanceHistoryResponse(
        wallet_address=address,
        entries=[e.to_dict() for e in entries],
    )


@router.post("/{wallet}/schedule")
async def schedule_rebalance(
    wallet: str,
    request: Optional[ScheduleRebalanceRequest] = None,
) -> Dict[str, Any]:
    """Schedule a one-shot rebalance, replacing any pending one."""
    request = request or ScheduleRebalanceRequest()
    try:
        return await get_auto_rebalancer().schedule_rebalance(
            wallet,
            delay_seconds=request.delay_seconds,
            only_if_needed=request.only_if_needed,
            force=request.force,
            risk_profile=request.risk_profile,
        )
    except (AptosError, ValueError) as e:
        raise _http_error(e)


@router.get("/{wallet}/schedule")
async def get_scheduled_rebalance(wallet: str) -> Dict[str, Any]:
    try:
        scheduled = get_auto_rebalancer().get_scheduled_rebalance(validate_wallet_address(wallet))
    except ValueError as e:
        raise _http_error(e)
    return {"scheduled": scheduled is not None, "rebalance": scheduled}


@router.delete("/{wallet}/schedule")
async def clear_scheduled_rebalance(wallet: str) -> Dict[str, Any]:
    try:
        cleared = get_auto_rebalancer().clear_scheduled_rebalance(validate_wallet_address(wallet))
    except ValueError as e:
        raise _http_error(e)
    return {"cleared": cleared}


@router.post("/{wallet}/monitoring")
async def enable_monitoring(
    wallet: str,
    request: Optional[MonitoringRequest] = None,
) -> Dict[str, Any]:
    """Check drift now, then either rebalance soon or keep checking."""
    request = request or MonitoringRequest()
    try:
        return await get_auto_rebalancer().enable_monitoring(wallet, request.check_interval_hours)
    except (AptosError, ValueError) as e:
        raise _http_error(e)


@router.get("/{wallet}/monitoring")
async def get_monitoring_status(wallet: str) -> Dict[str, Any]:
    try:
        status = get_auto_rebalancer().get_monitoring_status(wallet)
    except ValueError as e:
        raise _http_error(e)
    return {"monitoring": status is not None, "status": status}


@router.delete("/{wallet}/monitoring")
async def disable_monitoring(wallet: str) -> Dict[str, Any]:
    try:
        disabled = get_auto_rebalancer().disable_monitoring(wallet)
    except ValueError as e:
        raise _http_error(e)
    return {"disabled": disabled}
