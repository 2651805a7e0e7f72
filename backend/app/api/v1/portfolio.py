"""Portfolio endpoints."""

from fastapi import APIRouter, HTTPException, Query

from app.schemas.portfolio import PerformanceResponse, PortfolioResponse
from app.services.data.aptos_client import AptosError
from app.services.portfolio.portfolio_tracker import (
    InvalidWalletAddressError,
    PortfolioSnapshot,
    get_portfolio_tracker,
    validate_wallet_address,
)

router = APIRouter()


async def _load_snapshot(wallet: str, refresh: bool = False) -> PortfolioSnapshot:
    try:
        address = validate_wallet_address(wallet)
        return await get_portfolio_tracker().get_portfolio(address, force_refresh=refresh)
    except InvalidWalletAddressError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AptosError as e:
        raise HTTPException(status_code=502, detail=f"Aptos node error: {e}")


@router.get("/{wallet}", response_model=PortfolioResponse)
async def get_portfolio(
    wallet: str,
    refresh: bool = Query(default=False, description="Bypass the portfolio cache"),
) -> PortfolioResponse:
    """Holdings, allocation and recent transactions for a wallet."""
    snapshot = await _load_snapshot(wallet, refresh)
    data = snapshot.to_dict()
    data["total_value_usd"] = round(snapshot.total_value_usd, 2)
    data["total_apt"] = round(snapshot.total_apt, 8)
    data["allocation"] = {k: round(v, 2) for k, v in snapshot.allocation_percentages().items()}
    return PortfolioResponse.model_validate(data)


@router.get("/{wallet}/performance", response_model=PerformanceResponse)
async def get_portfolio_performance(
    wallet: str,
    days: int = Query(default=30, ge=1, le=365),
) -> PerformanceResponse:
    """Estimated value of the wallet's APT exposure over the last ``days``."""
    snapshot = await _load_snapshot(wallet)
    analysis = await get_portfolio_tracker().analyze_performance(snapshot, days)
    return PerformanceResponse(wallet_address=snapshot.wallet_address, **analysis.to_dict())
