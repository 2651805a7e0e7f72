# Portfolio services module
from app.services.portfolio.portfolio_tracker import (
    AssetHolding,
    InvalidWalletAddressError,
    PortfolioSnapshot,
    PortfolioTracker,
    get_portfolio_tracker,
)

__all__ = [
    "AssetHolding",
    "InvalidWalletAddressError",
    "PortfolioSnapshot",
    "PortfolioTracker",
    "get_portfolio_tracker",
]
