"""
Core services for the detection engine.

This package contains the pipeline stages (session routing, history windows,
thresholds, detection, rate limiting) and the coordinator that ties them
together.
"""

from .baselines import BaselineStore
from .collaborators import (
    AlertSink,
    AssignmentProvider,
    AssignmentStore,
    AuditSink,
    BaselineProvider,
    ReadingSource,
)
from .detector import MultiParameterDetector
from .dispatch import DispatchCoordinator, PipelineOutcome, PipelineStage
from .history_window import HistoryWindowStore
from .rate_limiter import RateLimiter
from .session_registry import ActiveSession, SessionRegistry
from .thresholds import HeartRateThresholds, derive_thresholds

__all__ = [
    "ActiveSession",
    "AlertSink",
    "AssignmentProvider",
    "AssignmentStore",
    "AuditSink",
    "BaselineProvider",
    "BaselineStore",
    "DispatchCoordinator",
    "HeartRateThresholds",
    "HistoryWindowStore",
    "MultiParameterDetector",
    "PipelineOutcome",
    "PipelineStage",
    "RateLimiter",
    "ReadingSource",
    "SessionRegistry",
    "derive_thresholds",
]
