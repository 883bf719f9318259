"""Configuration management for literacy impact monitoring."""

from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", env_file=".env", extra="ignore")

    url: Optional[str] = None
    pool_min_size: int = 1
    pool_max_size: int = 10
    command_timeout: float = 60.0

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        """Validate database URL format."""
        if v is None:
            return v
        if not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL connection string")
        if "[PASSWORD]" in v:
            raise ValueError("DATABASE_URL contains placeholder password - please set actual password")
        return v


class AggregationSettings(BaseSettings):
    """Tunables for the impact aggregation engine."""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", env_file=".env", extra="ignore")

    fetch_timeout_seconds: float = 10.0
    cache_ttl_seconds: int = 300
    public_cache_ttl_seconds: int = 600
    fiscal_year_start_month: int = 7
    default_region: str = "Unassigned"

    # Modules every expected school must report in for a scope to be Complete
    required_modules: List[str] = Field(
        default_factory=lambda: ["training", "visit", "assessment"]
    )

    fidelity_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "coaching_coverage": 0.4,
            "assessment_compliance": 0.3,
            "teaching_quality": 0.3,
        }
    )

    # Score at or above which a learner counts as meeting the domain benchmark
    benchmarks: Dict[str, float] = Field(
        default_factory=lambda: {
            "letterNames": 40.0,
            "letterSounds": 40.0,
            "realWords": 30.0,
            "madeUpWords": 20.0,
            "storyReading": 46.0,
            "comprehension": 3.0,
        }
    )

    # Scores above these are treated as data-entry outliers in quality reports
    outlier_maxima: Dict[str, float] = Field(
        default_factory=lambda: {
            "letterNames": 150.0,
            "letterSounds": 150.0,
            "realWords": 150.0,
            "madeUpWords": 150.0,
            "storyReading": 250.0,
            "comprehension": 10.0,
        }
    )

    @field_validator("fiscal_year_start_month")
    @classmethod
    def validate_month(cls, v):
        if not 1 <= v <= 12:
            raise ValueError("fiscal_year_start_month must be between 1 and 12")
        return v

    @field_validator("fidelity_weights")
    @classmethod
    def validate_weights(cls, v):
        """Weights must be non-negative and not all zero."""
        if any(weight < 0 for weight in v.values()):
            raise ValueError("fidelity weights must be non-negative")
        if v and sum(v.values()) <= 0:
            raise ValueError("fidelity weights must not all be zero")
        return v


class AppSettings(BaseSettings):
    """Application configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    name: str = Field("literacy-impact", validation_alias="APP_NAME")
    version: str = Field("0.1.0", validation_alias="APP_VERSION")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    debug: bool = Field(False, validation_alias="DEBUG")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment."""
        return cls()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings

    if _settings is None:
        _settings = Settings.load()

    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
