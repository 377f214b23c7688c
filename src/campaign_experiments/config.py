"""Engine settings, read from the environment (EXPERIMENTS_*) or a .env file."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Process-wide defaults. Per-test behaviour lives on the test's Configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXPERIMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Statistics
    default_confidence_level: float = 0.95
    default_power: float = 0.8
    traffic_tolerance: float = 0.01
    sequential_min_sample_size: int = 100

    # Bayesian sampling
    monte_carlo_draws: int = 100_000
    monte_carlo_seed: int = 42

    # Background analysis
    analysis_interval_seconds: float = 3600.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0

    @field_validator("default_confidence_level", "default_power")
    @classmethod
    def check_probability(cls, v):
        if not 0 < v < 1:
            raise ValueError(f"must be between 0 and 1, got {v}")
        return v

    @field_validator("monte_carlo_draws", "retry_attempts")
    @classmethod
    def check_positive(cls, v):
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
