"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class GeofenceConfig(BaseModel):
    """Geofence monitoring configuration."""

    min_radius_meters: float = Field(default=50.0, gt=0.0, description="Smallest allowed zone")
    max_radius_meters: float = Field(default=5000.0, gt=0.0, description="Largest allowed zone")
    max_zones_per_subject: int = Field(default=10, gt=0, description="Zone cap per subject")
    movement_threshold_meters: float = Field(
        default=10.0, gt=0.0, description="Displacement that counts as movement"
    )
    anomaly_threshold_minutes: float = Field(
        default=30.0, gt=0.0, description="Default no-movement window"
    )

    @model_validator(mode="after")
    def radius_bounds_ordered(self) -> "GeofenceConfig":
        if self.min_radius_meters > self.max_radius_meters:
            raise ValueError("min_radius_meters must not exceed max_radius_meters")
        return self


class MatchingConfig(BaseModel):
    """Volunteer matching configuration."""

    max_distance_meters: float = Field(
        default=5000.0, gt=0.0, description="Default volunteer max distance"
    )
    max_volunteers_per_case: int = Field(default=10, gt=0, description="Concurrent match cap")
    matching_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between periodic matching rounds"
    )
    distance_weight: float = Field(default=1.0, ge=0.0)
    availability_weight: float = Field(default=2.0, ge=0.0)
    priority_weight: float = Field(default=1.5, gt=0.0)
    assignment_timeout_seconds: float | None = Field(
        default=None, gt=0.0, description="Auto-reject unanswered assignments; None disables"
    )
    auto_assign: bool = Field(
        default=False, description="Assign top candidates automatically during rounds"
    )


class CaseConfig(BaseModel):
    """Case lifecycle configuration."""

    retention_days: int = Field(default=30, gt=0, description="Days before closed-case cleanup")
    safety_message: str = Field(
        default=(
            "Safety notice: a person in this area may need assistance. "
            "If you see someone who appears lost, please call 110. Do not approach alone."
        ),
        description="Generic, PII-free broadcast text sent on dispatch",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    geofence: GeofenceConfig = Field(default_factory=GeofenceConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    cases: CaseConfig = Field(default_factory=CaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    def _optional_float(val: str | None) -> float | None:
        if val is None or val.strip() == "" or val.strip().lower() == "none":
            return None
        return float(val)

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    geofence_config = GeofenceConfig(
        min_radius_meters=float(os.getenv("MIN_GEOFENCE_RADIUS", "50")),
        max_radius_meters=float(os.getenv("MAX_GEOFENCE_RADIUS", "5000")),
        max_zones_per_subject=int(os.getenv("MAX_GEOFENCES_PER_SUBJECT", "10")),
        movement_threshold_meters=float(os.getenv("MOVEMENT_THRESHOLD_METERS", "10")),
        anomaly_threshold_minutes=float(os.getenv("ANOMALY_THRESHOLD_MINUTES", "30")),
    )

    matching_config = MatchingConfig(
        max_distance_meters=float(os.getenv("MAX_VOLUNTEER_DISTANCE", "5000")),
        max_volunteers_per_case=int(os.getenv("MAX_VOLUNTEERS_PER_CASE", "10")),
        matching_interval_seconds=float(os.getenv("MATCHING_INTERVAL_SECONDS", "60")),
        distance_weight=float(os.getenv("DISTANCE_WEIGHT", "1.0")),
        availability_weight=float(os.getenv("AVAILABILITY_WEIGHT", "2.0")),
        priority_weight=float(os.getenv("PRIORITY_WEIGHT", "1.5")),
        assignment_timeout_seconds=_optional_float(os.getenv("ASSIGNMENT_TIMEOUT_SECONDS")),
        auto_assign=_parse_bool(os.getenv("AUTO_ASSIGN_VOLUNTEERS"), False),
    )

    case_config = CaseConfig(
        retention_days=int(os.getenv("CASE_RETENTION_DAYS", "30")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        geofence=geofence_config,
        matching=matching_config,
        cases=case_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def reset_config_cache() -> None:
    get_config.cache_clear()


def config_summary(config: AppConfig | None = None) -> dict[str, dict[str, object]]:
    """Flatten the active configuration into printable sections."""
    config = config or get_config()
    return {
        "environment": {
            "environment": config.environment,
            "debug": config.debug,
            "log_level": config.logging.level,
        },
        "geofence": config.geofence.model_dump(),
        "matching": config.matching.model_dump(),
        "cases": {
            "retention_days": config.cases.retention_days,
        },
    }
