"""Application configuration using pydantic-settings.

Covers chain endpoints, price feeds, retry bounds, relayer scheduling and
timelock policy for the ethereum, tron and near legs.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Telegram (operator alerts)
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token from BotFather")
    alert_chat_ids: str = Field(
        default="", description="Comma-separated Telegram chat IDs receiving operator alerts"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/swaprelay.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use simulated in-memory ledgers instead of RPC gateways"
    )

    # ======================
    # Chain endpoints
    # ======================
    eth_rpc_url: str = Field(default="http://localhost:8545", description="Ethereum escrow gateway URL")
    eth_escrow_contract: str = Field(default="", description="Ethereum HTLC contract address")
    eth_api_key: str = Field(default="", description="Ethereum gateway credential")

    tron_rpc_url: str = Field(default="http://localhost:8090", description="Tron escrow gateway URL")
    tron_escrow_contract: str = Field(default="", description="Tron HTLC contract address")
    tron_api_key: str = Field(default="", description="Tron gateway credential")

    near_rpc_url: str = Field(default="http://localhost:3030", description="NEAR escrow gateway URL")
    near_escrow_contract: str = Field(default="", description="NEAR HTLC contract account")
    near_api_key: str = Field(default="", description="NEAR gateway credential")

    # ======================
    # Price feeds
    # ======================
    coingecko_api_url: str = Field(
        default="https://api.coingecko.com/api/v3", description="CoinGecko API URL"
    )
    coingecko_api_key: str = Field(default="", description="CoinGecko API key (optional)")
    binance_api_url: str = Field(
        default="https://api.binance.com/api/v3", description="Binance API URL"
    )
    price_feeds: str = Field(
        default="coingecko,binance", description="Comma-separated price feeds in priority order"
    )
    feed_min_interval_seconds: float = Field(
        default=1.2, description="Minimum spacing between requests to the same feed"
    )
    feed_timeout_seconds: float = Field(default=5.0, description="Price feed request timeout")
    feed_max_attempts: int = Field(default=3, description="Attempts per feed before moving on")
    feed_backoff_max_seconds: float = Field(
        default=30.0, description="Cap for throttling backoff on a feed"
    )
    rate_cache_ttl_seconds: float = Field(default=30.0, description="Freshness window for cached rates")
    fallback_ttl_seconds: float = Field(
        default=5.0, description="Freshness window for rates served from the fallback table"
    )
    fallback_usd_prices: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "ETH": Decimal("3900"),
            "TRX": Decimal("0.27"),
            "NEAR": Decimal("7.20"),
        },
        description="USD prices used when every feed is unreachable",
    )

    # ======================
    # Retry policy
    # ======================
    retry_attempts: int = Field(default=3, description="Attempts for adapter calls")
    retry_base_delay: float = Field(default=1.0, description="Initial retry backoff in seconds")
    retry_max_delay: float = Field(default=30.0, description="Retry backoff cap in seconds")
    adapter_timeout_seconds: float = Field(default=20.0, description="Timeout per adapter call")

    # ======================
    # Relayer scheduling
    # ======================
    sweep_interval_seconds: float = Field(default=30.0, description="Expiry sweep interval")
    purge_interval_seconds: float = Field(default=3600.0, description="Audit purge interval")
    audit_retention_days: int = Field(default=7, description="Days terminal swaps are retained")
    worker_count: int = Field(default=4, description="Hashlock-partitioned event workers")
    max_refund_attempts: int = Field(
        default=5, description="Refund attempts per escrow before alerting an operator"
    )
    max_withdraw_attempts: int = Field(
        default=5, description="Withdrawal attempts per escrow before giving up until expiry"
    )
    self_fill: bool = Field(
        default=True, description="Relayer creates counter-escrows itself (else waits for resolvers)"
    )
    max_escrow_amounts: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Per-chain cap on a single counter-escrow; larger legs are split into fills",
    )
    monitor_backoff_base: float = Field(default=1.0, description="Initial resubscribe backoff")
    monitor_backoff_max: float = Field(default=60.0, description="Resubscribe backoff cap")

    # ======================
    # Timelocks
    # ======================
    default_timelock_seconds: int = Field(default=86400, description="Default swap duration (24h)")
    min_timelock_seconds: int = Field(default=600, description="Minimum swap duration (10 min)")
    max_timelock_seconds: int = Field(default=172800, description="Maximum swap duration (48h)")
    destination_timelock_margin_seconds: int = Field(
        default=1800, description="How much earlier the destination leg expires than the source"
    )

    # ======================
    # Pricing
    # ======================
    fee_rate_bps: int = Field(default=30, description="Bridge fee in basis points (0.3%)")
    auction_decay_seconds: int = Field(default=300, description="Dutch auction decay duration")
    auction_max_discount_bps: int = Field(
        default=100, description="Auction floor discount from the start price"
    )
    fallback_max_quote_usd: Decimal = Field(
        default=Decimal("1000"),
        description="Refuse fallback-priced swaps worth more than this in USD",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def alert_chats(self) -> list[int]:
        """Parse alert chat IDs into a list of integers."""
        if not self.alert_chat_ids:
            return []
        return [int(cid.strip()) for cid in self.alert_chat_ids.split(",") if cid.strip()]

    @property
    def feed_names(self) -> list[str]:
        """Configured price feeds in priority order."""
        return [name.strip().lower() for name in self.price_feeds.split(",") if name.strip()]

    @property
    def audit_retention_seconds(self) -> int:
        return self.audit_retention_days * 86400

    def get_rpc_url(self, chain: str) -> str:
        """Get escrow gateway URL for a chain."""
        rpc_map = {
            "ethereum": self.eth_rpc_url,
            "tron": self.tron_rpc_url,
            "near": self.near_rpc_url,
        }
        return rpc_map.get(chain.lower(), "")

    def get_escrow_contract(self, chain: str) -> str:
        """Get the HTLC contract reference for a chain."""
        contract_map = {
            "ethereum": self.eth_escrow_contract,
            "tron": self.tron_escrow_contract,
            "near": self.near_escrow_contract,
        }
        return contract_map.get(chain.lower(), "")

    def get_api_key(self, chain: str) -> str:
        """Get gateway credential for a chain."""
        key_map = {
            "ethereum": self.eth_api_key,
            "tron": self.tron_api_key,
            "near": self.near_api_key,
        }
        return key_map.get(chain.lower(), "")

    def get_max_escrow_amount(self, chain: str) -> Optional[Decimal]:
        """Largest single counter-escrow allowed on a chain, if capped."""
        return self.max_escrow_amounts.get(chain.lower())

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        data = {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "alert_chat_ids": self.alert_chat_ids or "(none)",
            "chains": {
                "ethereum": {
                    "rpc": self.eth_rpc_url,
                    "contract": self.eth_escrow_contract or "(not set)",
                    "api_key": "***" if self.eth_api_key else "(not set)",
                },
                "tron": {
                    "rpc": self.tron_rpc_url,
                    "contract": self.tron_escrow_contract or "(not set)",
                    "api_key": "***" if self.tron_api_key else "(not set)",
                },
                "near": {
                    "rpc": self.near_rpc_url,
                    "contract": self.near_escrow_contract or "(not set)",
                    "api_key": "***" if self.near_api_key else "(not set)",
                },
            },
            "pricing": {
                "feeds": self.feed_names,
                "coingecko_api_key": "***" if self.coingecko_api_key else "(not set)",
                "fee_rate_bps": self.fee_rate_bps,
                "rate_cache_ttl_seconds": self.rate_cache_ttl_seconds,
            },
            "relayer": {
                "self_fill": self.self_fill,
                "worker_count": self.worker_count,
                "sweep_interval_seconds": self.sweep_interval_seconds,
                "audit_retention_days": self.audit_retention_days,
            },
        }
        return data

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
