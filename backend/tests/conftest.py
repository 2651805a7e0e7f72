"""Pytest configuration and fixtures for CompounDefi tests."""

import fnmatch
import json
import os
import pytest
import sys
from pathlib import Path

# Add backend to Python path
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

# Set required env vars for tests before importing app modules
# LLM keys are blanked so no test can reach a real provider
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ.setdefault("APTOS_NETWORK", "mainnet")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

WALLET = "0x" + "ab" * 32


class InMemoryCache:
    """Stand-in for the Redis cache with the same JSON round trip."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        value = self.store.get(key)
        return None if value is None else json.loads(value)

    async def set(self, key, value, ttl=None):
        self.store[key] = json.dumps(value, default=str)
        self.ttls[key] = ttl

    async def delete(self, key):
        self.store.pop(key, None)

    async def delete_pattern(self, pattern):
        removed = [k for k in list(self.store) if fnmatch.fnmatch(k, pattern)]
        for key in removed:
            del self.store[key]
        return removed


@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    """Replace Redis with an in-memory dict for every test."""
    from app.core import redis as redis_module

    fake = InMemoryCache()
    for name in ("get", "set", "delete", "delete_pattern"):
        monkeypatch.setattr(redis_module.cache, name, getattr(fake, name))
    return fake


@pytest.fixture
def wallet():
    return WALLET


@pytest.fixture
def make_snapshot():
    """Build a PortfolioSnapshot from (symbol, protocol, kind, value_usd) tuples."""
    from app.services.portfolio.portfolio_tracker import AssetHolding, PortfolioSnapshot

    def _make(holdings, apt_price=10.0, wallet_address=WALLET):
        return PortfolioSnapshot(
            wallet_address=wallet_address,
            apt_price_usd=apt_price,
            holdings=tuple(
                AssetHolding(
                    symbol=symbol,
                    protocol=protocol,
                    kind=kind,
                    amount=value / apt_price,
                    value_usd=value,
                )
                for symbol, protocol, kind, value in holdings
            ),
        )

    return _make


@pytest.fixture
def make_recommendation():
    """Build a Recommendation from (protocol, product, percentage) tuples."""
    from app.services.recommendation.allocation import (
        AllocationEntry,
        Recommendation,
        RecommendationSource,
        RecommendationType,
        RiskProfile,
    )

    def _make(entries, risk_profile=RiskProfile.BALANCED):
        return Recommendation(
            allocation=[
                AllocationEntry(protocol=p, product=product, percentage=pct, expected_apr=7.0)
                for p, product, pct in entries
            ],
            title="Test strategy",
            summary="",
            total_apr=7.0,
            rationale="",
            risks=[],
            mitigations=[],
            steps=[],
            risk_profile=risk_profile,
            source=RecommendationSource.AI,
            type=RecommendationType.PERSONALIZED,
        )

    return _make
