"""Engine configuration and environment helpers."""

from __future__ import annotations

from datetime import date, datetime
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TIMEZONE = "UTC"
DEFAULT_POSITION_EPSILON = 0.0001
DEFAULT_PNL_NOISE_THRESHOLD = 0.01


class EngineSettings(BaseSettings):
    """Configuration options for the portfolio replay engine."""

    app_name: str = Field(default="Portfolio Replay")
    timezone: str = Field(default=DEFAULT_TIMEZONE)
    log_level: str = Field(default="INFO")

    target_account_id: str | None = Field(
        default=None,
        description="Account whose records are replayed. None keeps every account.",
    )
    as_of_date: date | None = Field(
        default=None,
        description="Last day of the reconstruction window. Defaults to today.",
    )
    position_epsilon: float = Field(default=DEFAULT_POSITION_EPSILON, gt=0.0)
    pnl_noise_threshold: float = Field(default=DEFAULT_PNL_NOISE_THRESHOLD, ge=0.0)
    default_commission: float = Field(
        default=0.0,
        ge=0.0,
        description="Commission used when a record carries none.",
    )

    price_service_url: str = Field(
        default="http://localhost:8110",
        description="Base URL for the historical close price service",
    )
    price_service_token: str | None = Field(default=None)
    price_service_timeout_seconds: float = Field(default=15.0, gt=0.0)
    history_max_concurrency: int = Field(default=1, ge=1)

    telemetry_enabled: bool = Field(default=False)
    telemetry_service_name: str = Field(default="portfolio-replay")
    telemetry_otlp_endpoint: str | None = Field(default=None)
    telemetry_otlp_insecure: bool = Field(default=True)
    telemetry_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIO_REPLAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {value!r}") from exc
        return value

    def resolved_as_of(self) -> date:
        """Return the configured as-of date, or today in the configured zone."""

        if self.as_of_date is not None:
            return self.as_of_date
        return datetime.now(ZoneInfo(self.timezone)).date()

    def dict_for_logging(self) -> dict[str, Any]:
        """Return a sanitized dict for logging purposes."""

        hidden = {"price_service_token"}
        return {k: ("***" if k in hidden and v else v) for k, v in self.model_dump().items()}


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> EngineSettings:
    """Return cached engine settings with optional overrides."""

    if overrides:
        return EngineSettings(**overrides)
    return EngineSettings()


__all__ = [
    "EngineSettings",
    "DEFAULT_TIMEZONE",
    "DEFAULT_POSITION_EPSILON",
    "DEFAULT_PNL_NOISE_THRESHOLD",
    "get_settings",
]
