"""
Configuration models for the Oko guard engine.

Uses Pydantic for validation and type safety. Values come from a YAML file
(with ${VAR} expansion) and can be overridden per-cycle from ledger settings.
"""
from typing import Any, Dict, Literal, Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from oko.constants import (
    CONFIRMATION_CADENCE_MARGIN,
    DEFAULT_API_TIMEOUT,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MIN_REQUEST_INTERVAL_MS,
    DEFAULT_RECV_WINDOW_MS,
    EMERGENCY_TIER,
    MAX_RETRY_ATTEMPTS,
)

CONFIG_SCHEMA_VERSION = "2026-10-01"

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Oko Guard"
    dry_run: bool = True  # If True, the paper exchange is used and no real orders are placed


class ExchangeConfig(BaseSettings):
    """Exchange adapter configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: Literal["bybit", "paper"] = "bybit"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False

    recv_window_ms: int = Field(default=DEFAULT_RECV_WINDOW_MS, ge=1000, le=60000)
    request_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, ge=1.0, le=60.0)
    max_retries: int = Field(default=MAX_RETRY_ATTEMPTS, ge=1, le=5, description="Attempts per call, including the first")
    base_backoff_seconds: float = Field(default=1.0, ge=0.0, le=10.0)
    max_backoff_seconds: float = Field(default=10.0, ge=0.5, le=60.0)

    # Shared queue: every adapter call funnels through one limiter
    rate_limit_max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT_REQUESTS, ge=1, le=50)
    rate_limit_min_interval_ms: int = Field(default=DEFAULT_MIN_REQUEST_INTERVAL_MS, ge=0, le=5000)

    instrument_cache_minutes: int = Field(default=60, ge=1, le=1440)

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))


class GuardConfig(BaseSettings):
    """Oko guard thresholds. Every field can be overridden at runtime through ledger settings."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True

    # Protection breach: price beyond the recorded stop by more than this (percent of stop)
    sl_breach_tolerance_pct: float = Field(default=2.0, ge=0.1, le=20.0)
    # P&L emergency: unrealized P&L / initial margin at or below -threshold (percent)
    pnl_emergency_threshold_pct: float = Field(default=50.0, ge=1.0, le=500.0)
    # Account drawdown: total P&L / total margin at or below -threshold (percent)
    account_drawdown_threshold_pct: float = Field(default=50.0, ge=1.0, le=500.0)
    correlated_loss_enabled: bool = True
    time_based_exit_enabled: bool = False
    time_based_exit_hours: float = Field(default=24.0, ge=0.5, le=720.0)

    close_confirmations: int = Field(default=3, ge=1, le=10)
    confirmation_window_seconds: float = Field(default=30.0, ge=1.0, le=600.0)
    confirmation_sweep_seconds: float = Field(default=60.0, ge=1.0, le=3600.0)

    repair_max_attempts: int = Field(default=3, ge=1, le=20)
    repair_cooldown_minutes: float = Field(default=10.0, ge=0.1, le=240.0)
    urgent_repair_max_attempts: int = Field(default=5, ge=1, le=20)
    repair_grace_period_seconds: float = Field(
        default=120.0, ge=30.0, le=600.0,
        description="Position age before an unrepairable protection gap escalates to a forced close",
    )

    close_verify_attempts: int = Field(default=3, ge=1, le=10)
    close_verify_delay_seconds: float = Field(default=1.0, ge=0.0, le=30.0)

    capitulation_threshold: int = Field(default=3, ge=1, le=50)
    ban_duration_hours: float = Field(default=24.0, ge=0.1, le=720.0)

    quantity_drift_tolerance_pct: float = Field(default=1.0, ge=0.0, le=50.0)
    default_sl_pct: float = Field(default=1.0, ge=0.05, le=50.0, description="Fallback stop distance from entry")
    default_tp_pct: float = Field(default=1.0, ge=0.05, le=100.0, description="Fallback target distance from entry")

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "GuardConfig":
        """Return a copy with any matching ledger setting applied (unknown keys are ignored)."""
        if not overrides:
            return self
        update = {k: v for k, v in overrides.items() if k in type(self).model_fields}
        if not update:
            return self
        return type(self).model_validate({**self.model_dump(), **update})


class LadderConfig(BaseSettings):
    """Take-profit ladder configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    tp1_close_pct: float = Field(default=50.0, gt=0.0, le=100.0)
    tp2_close_pct: float = Field(default=30.0, gt=0.0, le=100.0)
    stop_policy: Literal["breakeven", "trailing", "no_change"] = "breakeven"
    trailing_distance_pct: float = Field(default=0.5, gt=0.0, le=20.0)


class ConflictConfig(BaseSettings):
    """Policies applied when a signal targets a symbol that already has a position."""
    model_config = SettingsConfigDict(extra="ignore")

    same_symbol_behavior: Literal["reject_duplicates", "track_confirmations", "tier_based", "ignore"] = "track_confirmations"
    opposite_direction_strategy: Literal["reject", "market_reversal"] = "market_reversal"
    reversal_min_strength: float = Field(default=0.25, ge=0.0, le=1.0)
    emergency_tier: str = EMERGENCY_TIER
    emergency_can_reverse: bool = True
    emergency_override_mode: Literal["only_profit", "always"] = "only_profit"
    emergency_min_profit_percent: float = Field(default=0.0, ge=-100.0, le=1000.0)


class ExecutionConfig(BaseSettings):
    """Position opening settings."""
    model_config = SettingsConfigDict(extra="ignore")

    margin_per_trade_usdt: float = Field(default=100.0, gt=0.0, le=1_000_000.0)
    default_leverage: int = Field(default=10, ge=1, le=125)
    stale_lock_minutes: float = Field(default=10.0, ge=1.0, le=1440.0)


class MonitoringConfig(BaseSettings):
    """Logging and loop cadence."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    monitor_interval_seconds: float = Field(default=10.0, ge=1.0, le=3600.0)


class StorageConfig(BaseSettings):
    """Ledger storage. No database_url selects the in-memory ledger."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    ladder: LadderConfig = Field(default_factory=LadderConfig)
    conflict: ConflictConfig = Field(default_factory=ConflictConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @model_validator(mode="after")
    def _paper_when_dry_run(self) -> "Config":
        if self.system.dry_run and self.exchange.name != "paper":
            self.exchange.name = "paper"
        return self

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Keep original if not set

        config_dict = yaml.safe_load(_ENV_PATTERN.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("storage", {})["database_url"] = db_url

        if config_dict.get("environment") != "prod":
            system = config_dict.setdefault("system", {})
            if "dry_run" not in system:
                env_dry_run = os.getenv("DRY_RUN", "1")
                system["dry_run"] = env_dry_run in ("1", "true", "True", "TRUE")

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-field checks that pydantic field bounds cannot express."""
        if not self.system.dry_run and self.exchange.name == "bybit" and not self.exchange.has_credentials():
            raise ValueError("Live Bybit trading requires exchange.api_key and exchange.api_secret")
        if self.exchange.max_backoff_seconds < self.exchange.base_backoff_seconds:
            raise ValueError("exchange.max_backoff_seconds must be >= exchange.base_backoff_seconds")
        if self.guard.urgent_repair_max_attempts < self.guard.repair_max_attempts:
            raise ValueError("guard.urgent_repair_max_attempts must be >= guard.repair_max_attempts")

        # Detections arrive once per cycle; the window must hold all of them
        needed = (
            (self.guard.close_confirmations - 1)
            * self.monitoring.monitor_interval_seconds
            * CONFIRMATION_CADENCE_MARGIN
        )
        if self.guard.confirmation_window_seconds < needed:
            raise ValueError(
                f"guard.confirmation_window_seconds ({self.guard.confirmation_window_seconds}) must be >= "
                f"{needed:g} to fit {self.guard.close_confirmations} detections at a "
                f"{self.monitoring.monitor_interval_seconds:g}s monitor interval"
            )
        if self.guard.confirmation_sweep_seconds < self.guard.confirmation_window_seconds:
            raise ValueError("guard.confirmation_sweep_seconds must be >= guard.confirmation_window_seconds")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses oko/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
