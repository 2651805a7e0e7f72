"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Keys
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    coingecko_api_key: Optional[str] = Field(default=None, description="CoinGecko demo API key")
    coinmarketcap_api_key: Optional[str] = Field(default=None, description="CoinMarketCap API key")

    # LLM
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022")
    openai_model: str = Field(default="gpt-4o")
    llm_temperature: float = Field(default=0.2)
    llm_max_tokens: int = Field(default=4000)
    llm_timeout_seconds: float = Field(default=60.0)

    # Aptos network
    aptos_network: str = Field(default="mainnet", description="'mainnet' or 'testnet'")
    aptos_mainnet_endpoints: List[str] = Field(
        default=[
            "https://fullnode.mainnet.aptoslabs.com/v1",
            "https://aptos-mainnet-rpc.publicnode.com",
            "https://rpc.ankr.com/aptos",
        ],
    )
    aptos_testnet_endpoints: List[str] = Field(
        default=[
            "https://fullnode.testnet.aptoslabs.com/v1",
            "https://aptos-testnet-rpc.publicnode.com",
        ],
    )
    aptos_ping_timeout_seconds: float = Field(default=5.0)
    aptos_transactions_limit: int = Field(default=10)

    # Market data APIs
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    coinmarketcap_base_url: str = Field(default="https://pro-api.coinmarketcap.com/v1")
    defillama_yields_url: str = Field(default="https://yields.llama.fi")
    pancakeswap_positions_url: str = Field(default="https://api.pancakeswap.finance/v1/aptos/positions")
    liquidswap_positions_url: str = Field(default="https://api.liquidswap.com/v1/pools/positions")
    api_timeout_seconds: float = Field(default=10.0)
    default_apt_price_usd: float = Field(
        default=12.5,
        description="Last-resort APT price when every price source fails"
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )

    # Cache TTLs
    token_price_cache_seconds: int = Field(default=60)
    protocol_apr_cache_seconds: int = Field(default=3600)
    market_overview_cache_seconds: int = Field(default=600)
    portfolio_cache_seconds: int = Field(default=60)
    personalized_strategy_cache_seconds: int = Field(default=30 * 60)
    general_strategy_cache_seconds: int = Field(default=60 * 60)

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=True)

    # Server
    backend_port: int = Field(default=8050)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Rebalance defaults (per-wallet settings start from these)
    rebalance_min_drift_pct: float = Field(
        default=5.0,
        description="Minimum percentage-point drift that triggers a rebalance"
    )
    rebalance_max_slippage_pct: float = Field(default=2.0)
    rebalance_cooldown_hours: float = Field(
        default=24.0,
        description="Minimum time between two rebalances of the same wallet"
    )
    rebalance_max_operations: int = Field(default=6)
    rebalance_volatility_threshold_pct: float = Field(
        default=15.0,
        description="24h APT high/low spread above which rebalancing pauses"
    )
    rebalance_preserve_staked_positions: bool = Field(default=True)
    rebalance_history_size: int = Field(default=10)
    rebalance_monitor_interval_hours: float = Field(default=4.0)
    rebalance_immediate_delay_seconds: float = Field(default=5.0)

    # Rule-based staking plans
    staking_min_action_apt: float = Field(
        default=0.1,
        description="Smallest APT difference that produces an action item"
    )
    staking_large_portfolio_usd: float = Field(default=50_000.0)
    staking_small_portfolio_usd: float = Field(default=5_000.0)
    staking_active_trader_transactions: int = Field(default=10)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
