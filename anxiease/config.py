"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Detection constants live here, not scattered through the services
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from anxiease.domain.models import SeverityLevel

# Load environment variables from .env file
load_dotenv()


class DetectionConfig(BaseModel):
    """Multi-parameter detector thresholds."""

    sustain_seconds: float = Field(
        default=30.0, gt=0.0, description="How long HR must stay elevated to count as sustained"
    )
    min_sustained_samples: int = Field(
        default=3, ge=1, description="Minimum elevated samples inside the sustain window"
    )
    spo2_critical_threshold: float = Field(
        default=90.0, gt=0.0, le=100.0, description="SpO2 below this always triggers"
    )
    spo2_low_threshold: float = Field(
        default=94.0, gt=0.0, le=100.0, description="SpO2 below this needs user confirmation"
    )
    movement_spike_threshold: float = Field(
        default=40.0, ge=0.0, le=100.0, description="Movement intensity counted as a spike"
    )
    movement_anxiety_threshold: float = Field(
        default=70.0, ge=0.0, le=100.0, description="Movement intensity that boosts confidence"
    )

    @model_validator(mode="after")
    def thresholds_ordered(self) -> "DetectionConfig":
        if self.spo2_critical_threshold > self.spo2_low_threshold:
            raise ValueError("spo2_critical_threshold must not exceed spo2_low_threshold")
        if self.movement_spike_threshold > self.movement_anxiety_threshold:
            raise ValueError("movement_spike_threshold must not exceed movement_anxiety_threshold")
        return self


class HistoryWindowConfig(BaseModel):
    """Sliding window sizing."""

    capacity: int = Field(default=50, gt=0, description="Readings kept per session")


class CooldownPolicy(BaseModel):
    """Cooldowns for one severity, in seconds."""

    base_seconds: float = Field(gt=0.0, description="Normal gap between two alerts")
    denied_seconds: float = Field(gt=0.0, description="Gap after the user said 'not anxious'")
    dismissed_seconds: float = Field(gt=0.0, description="Gap after the user said 'not now'")
    response_window_seconds: float = Field(
        gt=0.0, description="How long a user response keeps influencing the cooldown"
    )


def _default_cooldowns() -> dict[SeverityLevel, CooldownPolicy]:
    return {
        SeverityLevel.MILD: CooldownPolicy(
            base_seconds=300, denied_seconds=3600, dismissed_seconds=900,
            response_window_seconds=7200,
        ),
        SeverityLevel.MODERATE: CooldownPolicy(
            base_seconds=180, denied_seconds=3600, dismissed_seconds=900,
            response_window_seconds=7200,
        ),
        SeverityLevel.SEVERE: CooldownPolicy(
            base_seconds=60, denied_seconds=1800, dismissed_seconds=600,
            response_window_seconds=3600,
        ),
        SeverityLevel.CRITICAL: CooldownPolicy(
            base_seconds=30, denied_seconds=600, dismissed_seconds=180,
            response_window_seconds=900,
        ),
    }


class RateLimitConfig(BaseModel):
    """Severity-scaled cooldowns. More severe means shorter."""

    cooldowns: dict[SeverityLevel, CooldownPolicy] = Field(default_factory=_default_cooldowns)

    def policy_for(self, severity: SeverityLevel) -> CooldownPolicy:
        # Bands below mild never dispatch on their own; treat them like mild
        return self.cooldowns.get(severity, self.cooldowns[SeverityLevel.MILD])

    @model_validator(mode="after")
    def mild_is_present(self) -> "RateLimitConfig":
        if SeverityLevel.MILD not in self.cooldowns:
            raise ValueError("rate limit config must define a mild cooldown")
        return self


class DispatchConfig(BaseModel):
    """Alert/audit sink call behaviour."""

    timeout_seconds: float = Field(default=5.0, gt=0.0, description="Per-attempt sink timeout")
    max_retries: int = Field(default=1, ge=0, le=3, description="Retries after the first attempt")
    retry_delay_seconds: float = Field(default=0.2, ge=0.0)
    circuit_failure_threshold: int = Field(default=5, gt=0)
    circuit_recovery_seconds: float = Field(default=60.0, gt=0.0)
    queue_size: int = Field(default=256, gt=0, description="Per-device ingestion queue bound")


class CacheConfig(BaseModel):
    """Read-mostly collaborator caching."""

    baseline_ttl_seconds: float = Field(default=10.0, ge=0.0)
    assignment_ttl_seconds: float = Field(default=5.0, ge=0.0)
    session_retention_days: int = Field(default=3, gt=0)


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

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    window: HistoryWindowConfig = Field(default_factory=HistoryWindowConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
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

    def _float(name: str, default: float) -> float:
        return float(os.getenv(name, str(default)))

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    detection_config = DetectionConfig(
        sustain_seconds=_float("SUSTAIN_SECONDS", 30.0),
        min_sustained_samples=int(os.getenv("MIN_SUSTAINED_SAMPLES", "3")),
        spo2_critical_threshold=_float("SPO2_CRITICAL_THRESHOLD", 90.0),
        spo2_low_threshold=_float("SPO2_LOW_THRESHOLD", 94.0),
        movement_spike_threshold=_float("MOVEMENT_SPIKE_THRESHOLD", 40.0),
        movement_anxiety_threshold=_float("MOVEMENT_ANXIETY_THRESHOLD", 70.0),
    )

    window_config = HistoryWindowConfig(capacity=int(os.getenv("WINDOW_CAPACITY", "50")))

    # Only the base cooldown is tunable from the environment
    cooldowns = _default_cooldowns()
    for severity, policy in cooldowns.items():
        env_name = f"COOLDOWN_{severity.value.upper()}_SECONDS"
        if os.getenv(env_name):
            cooldowns[severity] = policy.model_copy(
                update={"base_seconds": _float(env_name, policy.base_seconds)}
            )
    rate_limit_config = RateLimitConfig(cooldowns=cooldowns)

    dispatch_config = DispatchConfig(
        timeout_seconds=_float("DISPATCH_TIMEOUT_SECONDS", 5.0),
        max_retries=int(os.getenv("DISPATCH_MAX_RETRIES", "1")),
    )

    cache_config = CacheConfig(
        baseline_ttl_seconds=_float("BASELINE_CACHE_TTL_SECONDS", 10.0),
        assignment_ttl_seconds=_float("ASSIGNMENT_CACHE_TTL_SECONDS", 5.0),
        session_retention_days=int(os.getenv("SESSION_RETENTION_DAYS", "3")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        detection=detection_config,
        window=window_config,
        rate_limit=rate_limit_config,
        dispatch=dispatch_config,
        cache=cache_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


# Development helpers
def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nDETECTION")
    print(f"Sustain Window: {config.detection.sustain_seconds}s")
    print(f"Min Sustained Samples: {config.detection.min_sustained_samples}")
    print(
        f"SpO2 Critical/Low: {config.detection.spo2_critical_threshold}"
        f"/{config.detection.spo2_low_threshold}"
    )
    print(f"History Window Capacity: {config.window.capacity}")

    print("\nRATE LIMITS")
    for severity, policy in config.rate_limit.cooldowns.items():
        print(f"{severity.value}: {policy.base_seconds:.0f}s")


if __name__ == "__main__":
    print_config_summary()
