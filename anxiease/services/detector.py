"""
Multi-parameter anxiety detection.

Each metric is analysed on its own (pure functions), then a priority table
combines the per-metric results into one verdict:

1. Critical SpO2 always fires, at full confidence (life safety first).
2. Two or more abnormal metrics fire at high confidence without confirmation.
3. A single abnormal metric fires but asks the user to confirm.
4. Anything else is normal.

Movement that independently looks like anxiety adds a final confidence boost.

Known limitation: there is no exercise discriminator. Elevated HR together
with a movement spike is read as ``combinedHRMovement`` whether the cause is
anxiety or a workout.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from anxiease.config import DetectionConfig
from anxiease.domain.models import (
    AbnormalMetrics,
    DetectionReason,
    DetectionVerdict,
    Reading,
    SeverityLevel,
    VerdictMetrics,
)
from anxiease.services.thresholds import HeartRateThresholds

logger = structlog.get_logger(__name__)

MULTI_METRIC_BASE_CONFIDENCE = 0.85
EXTRA_METRIC_CONFIDENCE = 0.1
HR_MOVEMENT_COMBO_BOOST = 0.1
SINGLE_METRIC_CONFIDENCE = 0.6
VERY_HIGH_HR_CONFIDENCE = 0.75
ANXIOUS_MOVEMENT_BOOST = 0.1


class HeartRateTier(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    VERY_HIGH = "veryHigh"


class SpO2Status(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"
    ABSENT = "absent"


@dataclass(frozen=True)
class HeartRateAnalysis:
    is_abnormal: bool
    tier: HeartRateTier
    percentage_above: float
    sustained: bool
    sustained_samples: int
    severity: SeverityLevel


@dataclass(frozen=True)
class SpO2Analysis:
    status: SpO2Status

    @property
    def is_abnormal(self) -> bool:
        return self.status in (SpO2Status.LOW, SpO2Status.CRITICAL)

    @property
    def is_critical(self) -> bool:
        return self.status == SpO2Status.CRITICAL


@dataclass(frozen=True)
class MovementAnalysis:
    present: bool
    has_spikes: bool
    indicates_anxiety: bool
    intensity: float | None


def trailing_elevated_run(samples: Sequence[Reading], threshold: float) -> int:
    """Length of the unbroken run of samples at or above ``threshold`` ending at the newest one."""
    run = 0
    for sample in reversed(samples):
        if sample.heart_rate < threshold:
            break
        run += 1
    return run


def analyze_heart_rate(
    reading: Reading,
    recent: Sequence[Reading],
    thresholds: HeartRateThresholds,
    min_sustained_samples: int,
) -> HeartRateAnalysis:
    """
    Heart rate is abnormal only when it crosses the ``mild`` cut point and has
    stayed there: the trailing run of recent samples at or above ``mild`` must
    hold at least ``min_sustained_samples`` readings. A short run means "not
    yet sustained", so the metric reads as not abnormal this round.
    """
    hr = reading.heart_rate
    percentage_above = (hr - thresholds.baseline) / thresholds.baseline

    crosses_mild = hr >= thresholds.mild
    run = trailing_elevated_run(recent, thresholds.mild) if crosses_mild else 0
    sustained = run >= min_sustained_samples

    if hr >= thresholds.moderate:
        tier = HeartRateTier.VERY_HIGH
    elif crosses_mild:
        tier = HeartRateTier.HIGH
    else:
        tier = HeartRateTier.NORMAL

    return HeartRateAnalysis(
        is_abnormal=crosses_mild and sustained,
        tier=tier,
        percentage_above=round(percentage_above * 100, 1),
        sustained=sustained,
        sustained_samples=run,
        severity=thresholds.severity_for(hr),
    )


def analyze_spo2(spo2: float | None, config: DetectionConfig) -> SpO2Analysis:
    if spo2 is None:
        return SpO2Analysis(SpO2Status.ABSENT)
    if spo2 < config.spo2_critical_threshold:
        return SpO2Analysis(SpO2Status.CRITICAL)
    if spo2 < config.spo2_low_threshold:
        return SpO2Analysis(SpO2Status.LOW)
    return SpO2Analysis(SpO2Status.NORMAL)


def analyze_movement(movement_level: float | None, config: DetectionConfig) -> MovementAnalysis:
    if movement_level is None:
        return MovementAnalysis(
            present=False, has_spikes=False, indicates_anxiety=False, intensity=None
        )
    return MovementAnalysis(
        present=True,
        has_spikes=movement_level > config.movement_spike_threshold,
        indicates_anxiety=movement_level > config.movement_anxiety_threshold,
        intensity=movement_level,
    )


@dataclass(frozen=True)
class MetricAnalyses:
    heart_rate: HeartRateAnalysis
    spo2: SpO2Analysis
    movement: MovementAnalysis

    @property
    def abnormal(self) -> AbnormalMetrics:
        return AbnormalMetrics(
            heart_rate=self.heart_rate.is_abnormal,
            spo2=self.spo2.is_abnormal,
            movement=self.movement.has_spikes,
        )


@dataclass(frozen=True)
class Rule:
    """One row of the priority table."""

    reason: DetectionReason
    matches: Callable[[MetricAnalyses, AbnormalMetrics], bool]
    confidence: Callable[[MetricAnalyses, AbnormalMetrics], float]
    requires_confirmation: bool


def _multi_metric_confidence(analyses: MetricAnalyses, abnormal: AbnormalMetrics) -> float:
    return MULTI_METRIC_BASE_CONFIDENCE + EXTRA_METRIC_CONFIDENCE * (abnormal.count - 2)


def _single_hr_confidence(analyses: MetricAnalyses, abnormal: AbnormalMetrics) -> float:
    if analyses.heart_rate.tier == HeartRateTier.VERY_HIGH:
        return VERY_HIGH_HR_CONFIDENCE
    return SINGLE_METRIC_CONFIDENCE


# First match wins.
PRIORITY_TABLE: tuple[Rule, ...] = (
    Rule(
        reason=DetectionReason.CRITICAL_SPO2,
        matches=lambda a, m: a.spo2.is_critical,
        confidence=lambda a, m: 1.0,
        requires_confirmation=False,
    ),
    Rule(
        reason=DetectionReason.COMBINED_HR_MOVEMENT,
        matches=lambda a, m: m.count >= 2 and m.heart_rate and m.movement,
        confidence=lambda a, m: _multi_metric_confidence(a, m) + HR_MOVEMENT_COMBO_BOOST,
        requires_confirmation=False,
    ),
    Rule(
        reason=DetectionReason.COMBINED_HR_SPO2,
        matches=lambda a, m: m.count >= 2 and m.heart_rate and m.spo2,
        confidence=_multi_metric_confidence,
        requires_confirmation=False,
    ),
    Rule(
        reason=DetectionReason.COMBINED_SPO2_MOVEMENT,
        matches=lambda a, m: m.count >= 2 and m.spo2 and m.movement,
        confidence=_multi_metric_confidence,
        requires_confirmation=False,
    ),
    Rule(
        reason=DetectionReason.HIGH_HR,
        matches=lambda a, m: m.count == 1 and m.heart_rate,
        confidence=_single_hr_confidence,
        requires_confirmation=True,
    ),
    Rule(
        reason=DetectionReason.LOW_SPO2,
        matches=lambda a, m: m.count == 1 and m.spo2,
        confidence=lambda a, m: SINGLE_METRIC_CONFIDENCE,
        requires_confirmation=True,
    ),
    Rule(
        reason=DetectionReason.MOVEMENT_SPIKES,
        matches=lambda a, m: m.count == 1 and m.movement,
        confidence=lambda a, m: SINGLE_METRIC_CONFIDENCE,
        requires_confirmation=True,
    ),
)


def alert_severity(reason: DetectionReason, heart_rate_severity: SeverityLevel) -> SeverityLevel:
    """Severity used to key rate limiting for a triggered verdict."""
    if reason == DetectionReason.CRITICAL_SPO2:
        return SeverityLevel.CRITICAL
    if heart_rate_severity in (SeverityLevel.NORMAL, SeverityLevel.ELEVATED):
        return SeverityLevel.MILD
    return heart_rate_severity


class MultiParameterDetector:
    """Turns one reading plus its session window into a DetectionVerdict."""

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()
        self.logger = logger.bind(component="multi_parameter_detector")

    def evaluate(
        self,
        reading: Reading,
        window: Sequence[Reading],
        thresholds: HeartRateThresholds,
    ) -> DetectionVerdict:
        """
        Evaluate ``reading`` against ``window``.

        ``window`` is the session's history, normally already containing
        ``reading`` (the coordinator appends before evaluating). Only samples
        within ``sustain_seconds`` of the reading count toward sustain.
        """
        recent = self._sustain_samples(reading, window)
        analyses = MetricAnalyses(
            heart_rate=analyze_heart_rate(
                reading, recent, thresholds, self.config.min_sustained_samples
            ),
            spo2=analyze_spo2(reading.spo2, self.config),
            movement=analyze_movement(reading.movement_level, self.config),
        )
        abnormal = analyses.abnormal

        rule = next((r for r in PRIORITY_TABLE if r.matches(analyses, abnormal)), None)

        if rule is None:
            triggered = False
            reason = DetectionReason.NORMAL
            confidence = 0.0
            requires_confirmation = False
            severity = SeverityLevel.NORMAL
        else:
            triggered = True
            reason = rule.reason
            confidence = rule.confidence(analyses, abnormal)
            requires_confirmation = rule.requires_confirmation
            severity = alert_severity(reason, analyses.heart_rate.severity)

            if analyses.movement.indicates_anxiety:
                confidence += ANXIOUS_MOVEMENT_BOOST

        confidence = round(min(1.0, confidence), 2)

        verdict = DetectionVerdict(
            triggered=triggered,
            reason=reason,
            confidence_level=confidence,
            requires_user_confirmation=requires_confirmation,
            severity=severity,
            abnormal_metrics=abnormal,
            metrics=VerdictMetrics(
                heart_rate=reading.heart_rate,
                baseline_heart_rate=thresholds.baseline,
                spo2=reading.spo2,
                movement_level=reading.movement_level,
                body_temp=reading.body_temp,
                percentage_above_baseline=analyses.heart_rate.percentage_above,
                sustained_heart_rate=analyses.heart_rate.sustained,
                sustained_samples=analyses.heart_rate.sustained_samples,
            ),
            evaluated_at=reading.timestamp,
        )

        self.logger.debug(
            "reading_evaluated",
            triggered=verdict.triggered,
            reason=verdict.reason.value,
            confidence=verdict.confidence_level,
            abnormal_count=abnormal.count,
            heart_rate=reading.heart_rate,
            baseline=thresholds.baseline,
        )
        return verdict

    def _sustain_samples(self, reading: Reading, window: Sequence[Reading]) -> list[Reading]:
        cutoff = reading.timestamp.timestamp() - self.config.sustain_seconds
        recent = [
            r
            for r in window
            if cutoff <= r.timestamp.timestamp() <= reading.timestamp.timestamp()
        ]
        if reading not in recent:
            recent.append(reading)
        recent.sort(key=lambda r: r.timestamp)
        return recent
