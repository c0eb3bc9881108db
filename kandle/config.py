"""Configuration management using pydantic settings."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: Path = Field(default=Path("kandle.db"))
    busy_timeout_ms: int = Field(default=5000, ge=0)


class TimeframeSeed(BaseModel):
    """A timeframe created at startup if missing."""

    name: str = Field(min_length=1)
    interval_minutes: float = Field(gt=0)
    description: str = Field(default="")
    is_active: bool = Field(default=True)


DEFAULT_TIMEFRAMES = [
    TimeframeSeed(name="1min", interval_minutes=1, description="1 Minute"),
    TimeframeSeed(name="3min", interval_minutes=3, description="3 Minutes"),
    TimeframeSeed(name="5min", interval_minutes=5, description="5 Minutes"),
    TimeframeSeed(name="15min", interval_minutes=15, description="15 Minutes"),
    TimeframeSeed(name="30min", interval_minutes=30, description="30 Minutes"),
    TimeframeSeed(name="1hour", interval_minutes=60, description="1 Hour"),
    TimeframeSeed(name="1day", interval_minutes=1440, description="1 Day"),
]


class AggregationConfig(BaseModel):
    """Candle aggregation configuration."""

    # single_tick folds only the arriving tick into an open candle and
    # requires in-order ticks per instrument. reaggregate rebuilds the open
    # candle from every stored tick in its bucket on each update.
    update_policy: Literal["single_tick", "reaggregate"] = Field(default="single_tick")


class IngestionConfig(BaseModel):
    """Tick ingestion configuration."""

    default_exchange: str = Field(default="NSE")
    default_instrument_type: str = Field(default="EQ")


class QueryConfig(BaseModel):
    """Read-side configuration."""

    default_limit: int = Field(default=100, ge=1, le=10_000)
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Default per-query timeout; None waits indefinitely",
    )
    volume_profile_step: float = Field(
        default=0.05,
        gt=0,
        description="Price level width when the instrument has no tick size",
    )


class RetentionConfig(BaseModel):
    """Retention policy for raw ticks and candles."""

    tick_retention_days: int = Field(default=7, ge=1)
    candle_retention_days: int = Field(default=90, ge=1)

    # Only these timeframes are pruned; all other candles are kept forever.
    candle_timeframes: list[str] = Field(default_factory=lambda: ["1day"])

    sweep_interval_minutes: float = Field(default=60, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_dir: Path = Field(default=Path("logs"))
    json_format: bool = Field(default=True)


class Settings(BaseSettings):
    """Application settings."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    timeframes: list[TimeframeSeed] = Field(
        default_factory=lambda: [seed.model_copy() for seed in DEFAULT_TIMEFRAMES]
    )
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {
        "env_prefix": "KANDLE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("timeframes")
    @classmethod
    def _unique_timeframe_names(cls, value: list[TimeframeSeed]) -> list[TimeframeSeed]:
        names = [seed.name for seed in value]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate timeframe names: {sorted(duplicates)}")
        return value


def load_settings() -> Settings:
    """Load settings from environment variables."""
    return Settings()
