"""CompounDefi backend - Aptos DeFi portfolio and auto-rebalancing API."""

__version__ = "0.3.0"
