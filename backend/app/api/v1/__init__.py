"""API v1 router."""

from fastapi import APIRouter

from app.api.v1 import health, portfolio, recommendations, rebalance, market

router = APIRouter(prefix="/api/v1")

router.include_router(health.router, tags=["Health"])
router.include_router(portfolio.router, prefix="/portfolio", tags=["Portfolio"])
router.include_router(recommendations.router, prefix="/recommendations", tags=["Recommendations"])
router.include_router(rebalance.router, prefix="/rebalance", tags=["Rebalance"])
router.include_router(market.router, prefix="/market", tags=["Market"])
