"""Market data endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Query

from app.services.data.market_data import get_market_data_service

router = APIRouter()


@router.get("/overview")
async def get_market_overview(
    refresh: bool = Query(default=False, description="Bypass the market cache"),
) -> Dict[str, Any]:
    """Token prices, protocol yields and APT sentiment."""
    overview = await get_market_data_service().get_market_overview(force_refresh=refresh)
    return overview.to_dict()


@router.get("/protocols")
async def get_protocol_rates(
    refresh: bool = Query(default=False, description="Bypass the yields cache"),
) -> Dict[str, Any]:
    """Staking, lending and liquidity yields per tracked protocol.

    ``is_default`` is true when no live yield source answered.
    """
    rates = await get_market_data_service().get_protocol_rates(force_refresh=refresh)
    data = rates.to_dict()
    data["total_tvl_usd"] = rates.total_tvl_usd
    return data
