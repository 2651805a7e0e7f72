"""Health check endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

from app import __version__
from app.core.config import get_settings
from app.core.redis import redis_status
from app.core.scheduler import get_scheduler_status
from app.schemas.common import HealthResponse
from app.services.data.aptos_client import get_aptos_client
from app.services.recommendation.ai_recommendation import get_recommendation_service

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check health of Redis, the Aptos node and the LLM providers."""
    now = datetime.now(timezone.utc)

    redis = await redis_status()
    aptos_status = "healthy" if await get_aptos_client().health_check() else "unhealthy"

    llm_providers = get_recommendation_service().get_available_models()
    llm_available = any(p["available"] for p in llm_providers.values())

    all_healthy = redis == "healthy" and aptos_status == "healthy" and llm_available

    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        timestamp=now,
        version=__version__,
        network=get_settings().aptos_network,
        redis=redis,
        aptos_node=aptos_status,
        llm_providers=llm_providers,
        scheduler=get_scheduler_status(),
    )
