# Data services module
from app.services.data.aptos_client import AptosClient, AptosError, get_aptos_client
from app.services.data.market_data import MarketDataService, get_market_data_service

__all__ = [
    "AptosClient",
    "AptosError",
    "get_aptos_client",
    "MarketDataService",
    "get_market_data_service",
]
