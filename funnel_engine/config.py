from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    CATALOG_RESOURCE_LIMIT: int = 10
    FUNNEL_PAID_CAPACITY: int = 3
    FUNNEL_FREE_CAPACITY: int = 3
    READINESS_MIN_TOTAL_RESOURCES: int = 3
    READINESS_MIN_FREE_RESOURCES: int = 1
    ASSIGNMENT_QUEUE_LIMIT: int = 50
    FEEDBACK_SIGNAL_TTL_SECONDS: float = 3.0
    FEEDBACK_MAX_SIGNALS: int = 50

    ENGINE_DB_URL: str = "sqlite:///./funnel_engine.db"
    PERSISTENCE_BASE_URL: AnyHttpUrl | None = None
    GENERATION_SERVICE_URL: AnyHttpUrl | None = None
    DEPLOYMENT_SERVICE_URL: AnyHttpUrl | None = None
    SERVICE_API_TOKEN: str | None = None
    SERVICE_REQUEST_TIMEOUT_SECONDS: float = 20.0

    @field_validator(
        "CATALOG_RESOURCE_LIMIT",
        "FUNNEL_PAID_CAPACITY",
        "FUNNEL_FREE_CAPACITY",
        "READINESS_MIN_TOTAL_RESOURCES",
        "READINESS_MIN_FREE_RESOURCES",
        "ASSIGNMENT_QUEUE_LIMIT",
        "FEEDBACK_MAX_SIGNALS",
    )
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("limits and capacities must be >= 0")
        return value

    @field_validator("FEEDBACK_SIGNAL_TTL_SECONDS", "SERVICE_REQUEST_TIMEOUT_SECONDS")
    @classmethod
    def validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be > 0 seconds")
        return value

    @model_validator(mode="after")
    def validate_readiness_minimums(self) -> "Settings":
        if self.READINESS_MIN_FREE_RESOURCES > self.READINESS_MIN_TOTAL_RESOURCES:
            raise ValueError(
                "READINESS_MIN_FREE_RESOURCES cannot exceed READINESS_MIN_TOTAL_RESOURCES"
            )
        return self

    @staticmethod
    def _strip_url(value: AnyHttpUrl | None) -> str | None:
        if value is None:
            return None
        return str(value).rstrip("/")

    @property
    def persistence_base_url(self) -> str | None:
        return self._strip_url(self.PERSISTENCE_BASE_URL)

    @property
    def generation_service_url(self) -> str | None:
        return self._strip_url(self.GENERATION_SERVICE_URL)

    @property
    def deployment_service_url(self) -> str | None:
        return self._strip_url(self.DEPLOYMENT_SERVICE_URL)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


@dataclass(frozen=True)
class EngineLimits:
    catalog_resource_limit: int = 10
    paid_capacity: int = 3
    free_capacity: int = 3
    min_total_resources: int = 3
    min_free_resources: int = 1
    assignment_queue_limit: int = 50
    signal_ttl_seconds: float = 3.0
    max_signals: int = 50

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "EngineLimits":
        source = source or settings
        return cls(
            catalog_resource_limit=source.CATALOG_RESOURCE_LIMIT,
            paid_capacity=source.FUNNEL_PAID_CAPACITY,
            free_capacity=source.FUNNEL_FREE_CAPACITY,
            min_total_resources=source.READINESS_MIN_TOTAL_RESOURCES,
            min_free_resources=source.READINESS_MIN_FREE_RESOURCES,
            assignment_queue_limit=source.ASSIGNMENT_QUEUE_LIMIT,
            signal_ttl_seconds=source.FEEDBACK_SIGNAL_TTL_SECONDS,
            max_signals=source.FEEDBACK_MAX_SIGNALS,
        )
