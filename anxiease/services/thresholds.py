"""
Personalized heart-rate thresholds.

Cut points are fixed BPM offsets from the resting rate rather than
percentages, so they stay meaningful for both very low and very high
resting rates.
"""

from pydantic import BaseModel, ConfigDict, Field

from anxiease.domain.models import Baseline, SeverityLevel

SEVERITY_OFFSETS_BPM: dict[SeverityLevel, float] = {
    SeverityLevel.ELEVATED: 10.0,
    SeverityLevel.MILD: 15.0,
    SeverityLevel.MODERATE: 25.0,
    SeverityLevel.SEVERE: 35.0,
    SeverityLevel.CRITICAL: 45.0,
}


class HeartRateThresholds(BaseModel):
    """Absolute BPM cut points derived from one baseline."""

    model_config = ConfigDict(frozen=True)

    baseline: float = Field(gt=0.0)
    elevated: float
    mild: float
    moderate: float
    severe: float
    critical: float

    def severity_for(self, heart_rate: float) -> SeverityLevel:
        """Highest band whose cut point the heart rate reaches."""
        if heart_rate >= self.critical:
            return SeverityLevel.CRITICAL
        if heart_rate >= self.severe:
            return SeverityLevel.SEVERE
        if heart_rate >= self.moderate:
            return SeverityLevel.MODERATE
        if heart_rate >= self.mild:
            return SeverityLevel.MILD
        if heart_rate >= self.elevated:
            return SeverityLevel.ELEVATED
        return SeverityLevel.NORMAL


def thresholds_for_rate(resting_heart_rate: float) -> HeartRateThresholds:
    return HeartRateThresholds(
        baseline=resting_heart_rate,
        elevated=resting_heart_rate + SEVERITY_OFFSETS_BPM[SeverityLevel.ELEVATED],
        mild=resting_heart_rate + SEVERITY_OFFSETS_BPM[SeverityLevel.MILD],
        moderate=resting_heart_rate + SEVERITY_OFFSETS_BPM[SeverityLevel.MODERATE],
        severe=resting_heart_rate + SEVERITY_OFFSETS_BPM[SeverityLevel.SEVERE],
        critical=resting_heart_rate + SEVERITY_OFFSETS_BPM[SeverityLevel.CRITICAL],
    )


def derive_thresholds(baseline: Baseline) -> HeartRateThresholds:
    return thresholds_for_rate(baseline.resting_heart_rate)
