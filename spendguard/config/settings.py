"""Configuration management for SpendGuard."""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for SpendGuard."""

    model_config = SettingsConfigDict(
        env_prefix="SPENDGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Storage settings
    storage_backend: str = Field(
        default="sqlite",
        description="Store implementation: 'sqlite' or 'memory'"
    )
    database_path: str = Field(
        default="spendguard.db",
        description="Path to SQLite database file"
    )
    database_url: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides database_path"
    )
    pricing_file_path: Optional[str] = Field(
        default=None,
        description="Path to driver default pricing JSON (None = use packaged file)"
    )

    # Cost settings
    currency: str = Field(default="USD", description="Default ISO currency code")
    cost_precision: int = Field(
        default=10,
        ge=6,
        description="Fractional digits kept on every cost figure"
    )
    fallback_input_rate: float = Field(
        default=0.015,
        ge=0,
        description="Universal fallback input rate per 1K tokens"
    )
    fallback_output_rate: float = Field(
        default=0.075,
        ge=0,
        description="Universal fallback output rate per 1K tokens"
    )

    # Cache settings
    price_cache_ttl_seconds: float = Field(default=3600.0, gt=0)
    limit_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    spend_cache_ttl_seconds: float = Field(default=60.0, gt=0)

    # Hot-path store access
    store_timeout_seconds: float = Field(
        default=0.25,
        gt=0,
        description="Max time a pre-request store read may take before failing open"
    )
    store_pool_size: int = Field(default=4, ge=1)

    # Token estimation settings
    token_estimation_mode: str = Field(
        default="heuristic",
        description="Token estimation mode: 'tiktoken' or 'heuristic'"
    )
    chars_per_token: int = Field(default=4, ge=1)
    default_output_ratio: float = Field(
        default=0.6,
        ge=0,
        description="Default ratio for predicting output tokens from input tokens"
    )

    # Enforcement settings
    enforcement_enabled: bool = Field(
        default=True,
        description="When False every request is allowed without a check"
    )
    default_alert_thresholds: List[int] = Field(default_factory=lambda: [80, 95, 100])

    # Recorder settings
    recorder_workers: int = Field(default=2, ge=1)
    recorder_queue_size: int = Field(default=1000, ge=0)
    recorder_max_retries: int = Field(default=5, ge=1)
    recorder_backoff_base: float = Field(default=0.1, ge=0)
    recorder_backoff_max: float = Field(default=5.0, ge=0)
    recorder_timeout_seconds: float = Field(default=5.0, gt=0)

    def __init__(self, **kwargs):
        """Initialize settings with environment variable support."""
        super().__init__(**kwargs)

        # Expand ~ in database path
        if self.database_path.startswith("~"):
            self.database_path = str(Path(self.database_path).expanduser())

    @field_validator("storage_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError(f"Unknown storage backend: {value}")
        return value

    @field_validator("token_estimation_mode")
    @classmethod
    def _check_estimation_mode(cls, value: str) -> str:
        if value not in ("tiktoken", "heuristic"):
            raise ValueError(f"Unknown estimation mode: {value}")
        return value

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        if len(value) != 3 or not value.isalpha():
            raise ValueError(f"Invalid currency code: {value}")
        return value.upper()

    @classmethod
    def load_from_file(cls, config_file: str) -> "Settings":
        """Load settings from a YAML config file.

        Args:
            config_file: Path to YAML config file

        Returns:
            Settings instance
        """
        import yaml

        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def get_database_path(self) -> Path:
        """Get the database path as a Path object.

        Returns:
            Path to database file
        """
        path = Path(self.database_path)
        # Create parent directory if it doesn't exist
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
