"""Configuration management for the paper trading ledger."""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="PaperTrade Ledger", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )


# =============================================================================
# Ledger Configuration
# =============================================================================


class LedgerConfig(BaseSettings):
    """Account seeding and order policy."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Every new account starts with this much cash
    starting_balance: Decimal = Field(
        default=Decimal("100000"), validation_alias="LEDGER_STARTING_BALANCE"
    )
    currency: str = Field(default="USD", validation_alias="LEDGER_CURRENCY")

    # Sells beyond the open long quantity are rejected unless this is set
    allow_short_selling: bool = Field(
        default=False, validation_alias="LEDGER_ALLOW_SHORT_SELLING"
    )

    # 0 keeps the full trade history
    max_trade_history: int = Field(
        default=0, ge=0, validation_alias="LEDGER_MAX_TRADE_HISTORY"
    )

    @field_validator("starting_balance")
    @classmethod
    def validate_starting_balance(cls, v):
        if v < 0:
            raise ValueError("Starting balance must not be negative")
        return v


# =============================================================================
# Pricing Configuration
# =============================================================================


class PricingConfig(BaseSettings):
    """Price source selection, upstream timeout and fallback band."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # "simulated" random walk, "static" mock table, or "live" ccxt ticker
    pricing_mode: Literal["simulated", "static", "live"] = Field(
        default="simulated", validation_alias="PRICING_MODE"
    )

    # Upstream calls never take longer than this
    upstream_timeout_seconds: float = Field(
        default=3.0, gt=0, validation_alias="PRICING_UPSTREAM_TIMEOUT"
    )
    retry_attempts: int = Field(default=2, ge=0, validation_alias="PRICING_RETRY_ATTEMPTS")

    # Live market data
    exchange_id: str = Field(default="bybit", validation_alias="PRICING_EXCHANGE_ID")
    api_key: str = Field(default="", validation_alias="PRICING_API_KEY")
    api_secret: str = Field(default="", validation_alias="PRICING_API_SECRET")
    quote_currency: str = Field(default="USDT", validation_alias="PRICING_QUOTE_CURRENCY")

    # Synthetic prices are drawn from [min, max) on first sight of a symbol
    fallback_min_price: Decimal = Field(
        default=Decimal("50"), gt=0, validation_alias="PRICING_FALLBACK_MIN_PRICE"
    )
    fallback_max_price: Decimal = Field(
        default=Decimal("1050"), gt=0, validation_alias="PRICING_FALLBACK_MAX_PRICE"
    )
    volatility_pct: float = Field(
        default=0.002, ge=0, lt=1, validation_alias="PRICING_VOLATILITY_PCT"
    )
    spread_pct: Decimal = Field(
        default=Decimal("0.002"), ge=0, lt=1, validation_alias="PRICING_SPREAD_PCT"
    )
    random_seed: Optional[int] = Field(default=None, validation_alias="PRICING_RANDOM_SEED")

    # Background position refresh
    refresh_interval_seconds: float = Field(
        default=30.0, gt=0, validation_alias="PRICING_REFRESH_INTERVAL"
    )

    @model_validator(mode="after")
    def validate_band(self) -> "PricingConfig":
        if self.fallback_min_price >= self.fallback_max_price:
            raise ValueError("fallback_min_price must be below fallback_max_price")
        return self

    @computed_field
    @property
    def has_credentials(self) -> bool:
        """True if both API key and secret are configured."""
        return bool(self.api_key) and bool(self.api_secret)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Persistence backend configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    persistence_backend: Literal["memory", "sqlite"] = Field(
        default="sqlite", validation_alias="PERSISTENCE_BACKEND"
    )
    database_url: str = Field(
        default="sqlite:///./data/papertrade.db", validation_alias="DATABASE_URL"
    )
    echo_sql: bool = Field(default=False, validation_alias="DATABASE_ECHO")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    # Empty disables the file handler
    log_file: str = Field(default="logs/papertrade.log", validation_alias="LOG_FILE")
    json_logs: bool = Field(default=True, validation_alias="LOG_JSON")


# =============================================================================
# Global Configuration Container
# =============================================================================


class PaperTradeConfig:
    """
    Container for all configuration sections.

    Usage:
        from papertrade.core.config import paper_config

        seed = paper_config.ledger.starting_balance
        if paper_config.pricing.pricing_mode == "live":
            ...
    """

    def __init__(
        self,
        system: Optional[SystemConfig] = None,
        ledger: Optional[LedgerConfig] = None,
        pricing: Optional[PricingConfig] = None,
        database: Optional[DatabaseConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ):
        self.system = system or SystemConfig()
        self.ledger = ledger or LedgerConfig()
        self.pricing = pricing or PricingConfig()
        self.database = database or DatabaseConfig()
        self.logging = logging or LoggingConfig()

    @property
    def is_live_pricing(self) -> bool:
        return self.pricing.pricing_mode == "live"

    def validate_configuration(self) -> dict:
        """
        Validate the configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.is_live_pricing and not self.pricing.exchange_id:
            issues.append("Live pricing requires an exchange id")
        if self.ledger.starting_balance == 0:
            issues.append("Starting balance is zero; no buy order can be filled")
        if self.pricing.upstream_timeout_seconds > self.pricing.refresh_interval_seconds:
            issues.append("Upstream timeout exceeds the refresh interval")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

ledger_config = LedgerConfig()
pricing_config = PricingConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

paper_config = PaperTradeConfig(
    ledger=ledger_config,
    pricing=pricing_config,
    database=database_config,
    logging=logging_config,
)


__all__ = [
    "PaperTradeConfig",
    "paper_config",
    "ledger_config",
    "pricing_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "LedgerConfig",
    "PricingConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
