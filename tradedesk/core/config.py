"""Configuration management for TradeDesk."""

from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tradedesk.core.models import TrendTimeframe, VenueTradingParams

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
    app_name: str = Field(default="TradeDesk", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")


# =============================================================================
# Trading Configuration
# =============================================================================


class TradingConfig(BaseSettings):
    """Global admission control and scan loop settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Admission control
    max_total_positions: int = Field(default=5, ge=0, validation_alias="MAX_TOTAL_POSITIONS")
    cross_venue_rebuy_prevention: bool = Field(
        default=True, validation_alias="CROSS_VENUE_REBUY_PREVENTION"
    )

    # Global sweep override: close every open position on the next pass
    close_all_positions: bool = Field(default=False, validation_alias="CLOSE_ALL_POSITIONS")

    # Scheduled loop
    scan_interval_seconds: float = Field(default=60.0, gt=0, validation_alias="SCAN_INTERVAL_SECONDS")
    lock_lease_seconds: float = Field(default=55.0, gt=0, validation_alias="LOCK_LEASE_SECONDS")
    entry_scan_open_threshold: int = Field(
        default=5, ge=0, validation_alias="ENTRY_SCAN_OPEN_THRESHOLD"
    )

    # An exit order with no fill or status change for this long is given up on
    pending_exit_timeout_seconds: float = Field(
        default=300.0, gt=0, validation_alias="PENDING_EXIT_TIMEOUT_SECONDS"
    )


# =============================================================================
# Entry Timing Configuration
# =============================================================================


class EntryTimingConfig(BaseSettings):
    """Multi-timeframe entry timing settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    enabled: bool = Field(default=True, validation_alias="ENTRY_TIMING_ENABLED")
    # Kept as a plain string so an invalid value degrades to 5m with a warning
    short_timeframe: str = Field(default="5m", validation_alias="ENTRY_TIMING_SHORT_TF")
    min_correction_pct: float = Field(
        default=1.5, ge=0, validation_alias="ENTRY_TIMING_MIN_CORRECTION_PCT"
    )
    reversal_confidence: float = Field(
        default=0.6, validation_alias="ENTRY_TIMING_REVERSAL_CONFIDENCE"
    )
    use_extreme_tracking: bool = Field(
        default=True, validation_alias="ENTRY_TIMING_USE_EXTREMES"
    )
    extreme_lookback_minutes: int = Field(
        default=60, ge=1, validation_alias="ENTRY_TIMING_LOOKBACK_MINUTES"
    )

    @field_validator("reversal_confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        """Validate confidence is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Confidence must be between 0 and 1")
        return v


# =============================================================================
# Trailing Configuration
# =============================================================================


class TrailingConfig(BaseSettings):
    """Trailing stop-loss / take-profit settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    activation_ratio: float = Field(default=0.8, validation_alias="TRAILING_ACTIVATION_RATIO")
    min_interval_ms: int = Field(default=300_000, ge=0, validation_alias="TRAILING_MIN_INTERVAL_MS")
    tp_offset_percent: float = Field(default=10.0, validation_alias="TRAILING_TP_OFFSET_PERCENT")
    stop_offset_percent: float = Field(default=2.0, validation_alias="TRAILING_STOP_OFFSET_PERCENT")
    movement_guard_percent: float = Field(
        default=0.5, ge=0, validation_alias="TRAILING_MOVEMENT_GUARD_PERCENT"
    )
    predictor_min_confidence: float = Field(
        default=0.6, validation_alias="TRAILING_PREDICTOR_MIN_CONFIDENCE"
    )

    @field_validator("activation_ratio", "predictor_min_confidence")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Validate ratio is in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError("Ratio must be in (0, 1]")
        return v

    @field_validator("tp_offset_percent", "stop_offset_percent")
    @classmethod
    def validate_offset(cls, v: float) -> float:
        """Validate offsets are positive."""
        if v <= 0:
            raise ValueError("Offset percent must be positive")
        return v


# =============================================================================
# Venue Configuration
# =============================================================================


class VenueConfig(BaseSettings):
    """Connection, risk and sizing settings for the perpetuals venue."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    name: str = Field(default="hyperliquid", validation_alias="VENUE_NAME")
    enabled: bool = Field(default=False, validation_alias="VENUE_ENABLED")
    exchange_id: str = Field(default="hyperliquid", validation_alias="VENUE_EXCHANGE_ID")
    testnet: bool = Field(default=True, validation_alias="VENUE_TESTNET")
    wallet_address: str = Field(default="", validation_alias="VENUE_WALLET_ADDRESS")
    private_key: str = Field(default="", validation_alias="VENUE_PRIVATE_KEY")
    priority: int = Field(default=1, validation_alias="VENUE_PRIORITY")

    # Trading parameters
    default_leverage: int = Field(default=3, ge=1, validation_alias="VENUE_DEFAULT_LEVERAGE")
    max_open_positions: int = Field(default=3, ge=0, validation_alias="VENUE_MAX_OPEN_POSITIONS")
    # 100 USDC in 6-decimal quote units
    default_amount_in: int = Field(
        default=100_000_000, ge=0, validation_alias="VENUE_DEFAULT_AMOUNT_IN"
    )
    quote_decimals: int = Field(default=6, ge=0, validation_alias="VENUE_QUOTE_DECIMALS")
    stop_loss_percent: float = Field(default=15.0, gt=0, validation_alias="VENUE_STOP_LOSS_PERCENT")
    take_profit_percent: float = Field(
        default=25.0, gt=0, validation_alias="VENUE_TAKE_PROFIT_PERCENT"
    )
    predictor_min_confidence: float = Field(
        default=0.6, ge=0, le=1, validation_alias="VENUE_PREDICTOR_MIN_CONFIDENCE"
    )
    instruments_str: str = Field(
        default="BTC,ETH,SOL,AVAX,ARB,DOGE,LINK",
        validation_alias="VENUE_INSTRUMENTS",
    )
    quote_currency: str = Field(default="USDC", validation_alias="VENUE_QUOTE_CURRENCY")

    # HTTP client
    request_timeout_seconds: float = Field(default=30.0, gt=0, validation_alias="VENUE_TIMEOUT")
    retry_max_attempts: int = Field(default=3, ge=0, validation_alias="VENUE_RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, validation_alias="VENUE_RETRY_BASE_DELAY"
    )

    # Event stream
    ws_url: str = Field(
        default="wss://api.hyperliquid-testnet.xyz/ws", validation_alias="VENUE_WS_URL"
    )
    reconnect_base_delay_seconds: float = Field(
        default=1.0, gt=0, validation_alias="VENUE_RECONNECT_BASE_DELAY"
    )
    reconnect_max_delay_seconds: float = Field(
        default=30.0, gt=0, validation_alias="VENUE_RECONNECT_MAX_DELAY"
    )
    max_reconnect_attempts: int = Field(
        default=10, ge=1, validation_alias="VENUE_MAX_RECONNECT_ATTEMPTS"
    )

    @property
    def instruments(self) -> List[str]:
        """Parse instruments string into list."""
        return [s.strip().upper() for s in self.instruments_str.split(",") if s.strip()]

    def to_trading_params(self) -> VenueTradingParams:
        """Risk and sizing parameters handed to strategies and the orchestrator."""
        return VenueTradingParams(
            venue=self.name,
            enabled=self.enabled,
            priority=self.priority,
            max_open_positions=self.max_open_positions,
            default_amount_in=self.default_amount_in,
            stop_loss_percent=self.stop_loss_percent,
            take_profit_percent=self.take_profit_percent,
            default_leverage=self.default_leverage,
            currency=self.quote_currency,
        )


# =============================================================================
# Predictor Configuration
# =============================================================================


class PredictorConfig(BaseSettings):
    """Predictive signal service client settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    base_url: str = Field(default="http://localhost:8000", validation_alias="PREDICTOR_URL")
    request_timeout_seconds: float = Field(
        default=10.0, gt=0, validation_alias="PREDICTOR_TIMEOUT"
    )
    retry_attempts: int = Field(default=5, ge=1, validation_alias="PREDICTOR_RETRY_ATTEMPTS")
    retry_delay_seconds: float = Field(default=2.0, ge=0, validation_alias="PREDICTOR_RETRY_DELAY")


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///data/tradedesk.db", validation_alias="DATABASE_URL"
    )


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
    log_file: str = Field(default="logs/tradedesk.log", validation_alias="LOG_FILE")


# =============================================================================
# Combined Configuration Container
# =============================================================================


class TradeDeskConfig:
    """
    Container for all TradeDesk configurations.

    Usage:
        from tradedesk.core.config import app_config

        if app_config.venue.enabled:
            params = app_config.venue.to_trading_params()
    """

    def __init__(self):
        self.system = SystemConfig()
        self.trading = TradingConfig()
        self.entry_timing = EntryTimingConfig()
        self.trailing = TrailingConfig()
        self.venue = VenueConfig()
        self.predictor = PredictorConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.venue.enabled and not self.venue.wallet_address:
            issues.append(f"Venue {self.venue.name} is enabled without a wallet address")
        if self.venue.enabled and not self.venue.instruments:
            issues.append(f"Venue {self.venue.name} has no candidate instruments")

        valid_timeframes = {TrendTimeframe.FIVE_MIN.value, TrendTimeframe.FIFTEEN_MIN.value}
        if self.entry_timing.short_timeframe not in valid_timeframes:
            issues.append(
                f"Entry timing short timeframe {self.entry_timing.short_timeframe!r} "
                "is not 5m or 15m, 5m will be used"
            )

        if self.venue.reconnect_base_delay_seconds > self.venue.reconnect_max_delay_seconds:
            issues.append("Reconnect base delay exceeds max delay")

        if self.trading.lock_lease_seconds >= self.trading.scan_interval_seconds:
            issues.append("Lock lease should be shorter than the scan interval")

        if self.venue.max_open_positions > self.trading.max_total_positions:
            issues.append(
                f"Venue cap ({self.venue.max_open_positions}) exceeds global cap "
                f"({self.trading.max_total_positions})"
            )

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

trading_config = TradingConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

app_config = TradeDeskConfig()


__all__ = [
    "SystemConfig",
    "TradingConfig",
    "EntryTimingConfig",
    "TrailingConfig",
    "VenueConfig",
    "PredictorConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "TradeDeskConfig",
    "trading_config",
    "database_config",
    "logging_config",
    "app_config",
]
