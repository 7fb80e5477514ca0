"""
Domain models for the anxiety detection engine.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; readings and baselines are frozen so they
can be shared between concurrent pipeline stages without copying.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class SeverityLevel(str, Enum):
    """Heart-rate severity bands derived from a personal baseline."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class DetectionReason(str, Enum):
    """Why a verdict fired (or didn't)."""

    CRITICAL_SPO2 = "criticalSpO2"
    COMBINED_HR_MOVEMENT = "combinedHRMovement"
    COMBINED_HR_SPO2 = "combinedHRSpO2"
    COMBINED_SPO2_MOVEMENT = "combinedSpO2Movement"
    HIGH_HR = "highHR"
    LOW_SPO2 = "lowSpO2"
    MOVEMENT_SPIKES = "movementSpikes"
    NORMAL = "normal"


class UserResponse(str, Enum):
    """User answer to an "are you feeling anxious?" confirmation prompt."""

    YES = "yes"
    NO = "no"
    NOT_NOW = "not_now"


class Baseline(BaseModel):
    """Personal resting heart rate for one (user, device) pair."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    device_id: str
    resting_heart_rate: float = Field(gt=0.0, description="Resting heart rate in BPM")
    established_at: datetime = Field(default_factory=utc_now)
    sample_count: int = Field(default=0, ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class Assignment(BaseModel):
    """Binding of a shared device to the user currently wearing it."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    assigned_user_id: str
    active_session_id: str
    assigned_at: datetime = Field(default_factory=utc_now)
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    version: int = Field(default=0, ge=0, description="Bumped on every compare-and-swap write")

    @property
    def is_active(self) -> bool:
        return self.status == AssignmentStatus.ACTIVE


class Session(BaseModel):
    """One contiguous period during which a user is attributed a device's readings."""

    session_id: str
    user_id: str
    device_id: str
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class Reading(BaseModel):
    """
    Single sample pushed by the wearable.

    Optional sensor fields stay ``None`` when the device did not report them;
    the detector never treats a missing value as zero.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    heart_rate: float = Field(gt=0.0, description="Beats per minute")
    spo2: float | None = Field(default=None, ge=0.0, le=100.0)
    movement_level: float | None = Field(default=None, ge=0.0, le=100.0)
    body_temp: float | None = None
    session_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        """Devices that send naive timestamps report UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class AbnormalMetrics(BaseModel):
    heart_rate: bool = False
    spo2: bool = False
    movement: bool = False

    @property
    def count(self) -> int:
        return sum((self.heart_rate, self.spo2, self.movement))


class VerdictMetrics(BaseModel):
    """Values the verdict was computed from, handed to the alert sink for rendering."""

    heart_rate: float
    baseline_heart_rate: float
    spo2: float | None = None
    movement_level: float | None = None
    body_temp: float | None = None
    percentage_above_baseline: float = Field(description="Percent above resting heart rate")
    sustained_heart_rate: bool = False
    sustained_samples: int = Field(default=0, ge=0)


class DetectionVerdict(BaseModel):
    """Outcome of one detector evaluation. Not persisted by the engine itself."""

    triggered: bool
    reason: DetectionReason
    confidence_level: float = Field(ge=0.0, le=1.0)
    requires_user_confirmation: bool = False
    severity: SeverityLevel = SeverityLevel.NORMAL
    abnormal_metrics: AbnormalMetrics = Field(default_factory=AbnormalMetrics)
    metrics: VerdictMetrics
    evaluated_at: datetime = Field(default_factory=utc_now)


class RateLimitEntry(BaseModel):
    """Last dispatch for one (user, severity) key."""

    user_id: str
    severity: SeverityLevel
    last_dispatch_at: datetime
    last_user_response: UserResponse | None = None
    last_user_response_at: datetime | None = None


class RateLimitStatus(BaseModel):
    severity: SeverityLevel
    rate_limited: bool
    remaining_seconds: int = Field(ge=0)
    cooldown_seconds: float = Field(ge=0.0)
    last_user_response: UserResponse | None = None


class ReadingEvent(BaseModel):
    """A reading as published by a ReadingSource, tagged with the emitting device."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    reading: Reading
