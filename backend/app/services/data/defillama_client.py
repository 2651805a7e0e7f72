"""DeFiLlama yields client for Aptos protocol APY and TVL.

API docs: https://defillama.com/docs/api (yields section)
"""

from typing import List

import httpx
import structlog
from pydantic import ValidationError

from app.core.config import get_settings
from app.services.data.response_models import DefiLlamaPool, DefiLlamaPoolsResponse

logger = structlog.get_logger()

APTOS_CHAIN = "Aptos"


async def fetch_aptos_pools() -> List[DefiLlamaPool]:
    """Fetch yield pools on Aptos with a positive APY.

    The /pools endpoint returns every chain, so pools are filtered here.
    Returns an empty list on failure.
    """
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.api_timeout_seconds)) as client:
            response = await client.get(f"{settings.defillama_yields_url}/pools")

            if response.status_code != 200:
                logger.warning("DeFiLlama API error", status=response.status_code)
                return []

            parsed = DefiLlamaPoolsResponse.model_validate(response.json())

    except (httpx.HTTPError, httpx.TimeoutException) as e:
        logger.warning("DeFiLlama request failed", error=str(e))
        return []
    except (ValueError, ValidationError) as e:
        logger.warning("DeFiLlama response invalid", error=str(e))
        return []

    pools = [
        p for p in parsed.data
        if (p.chain or "").lower() == APTOS_CHAIN.lower() and (p.apy or 0) > 0
    ]
    logger.info("DeFiLlama Aptos pools fetched", count=len(pools))
    return pools
