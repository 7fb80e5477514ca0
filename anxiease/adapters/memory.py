"""
In-process collaborators for tests and local simulation.

Each class satisfies one of the Protocols in ``anxiease.services.collaborators``.
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from itertools import count

import structlog

from anxiease.domain.models import Assignment, Baseline, DetectionVerdict, Reading, ReadingEvent
from anxiease.errors import Result, TransientCollaboratorFailure
from anxiease.services.collaborators import AssignmentListener

logger = structlog.get_logger(__name__)


class InMemoryBaselineProvider:
    def __init__(self, baselines: list[Baseline] | None = None) -> None:
        self._baselines: dict[tuple[str, str], Baseline] = {}
        self.lookups = 0
        for baseline in baselines or []:
            self._baselines[(baseline.user_id, baseline.device_id)] = baseline

    async def put(self, baseline: Baseline) -> None:
        self._baselines[(baseline.user_id, baseline.device_id)] = baseline

    async def remove(self, user_id: str, device_id: str) -> None:
        self._baselines.pop((user_id, device_id), None)

    async def get(self, user_id: str, device_id: str) -> Baseline | None:
        self.lookups += 1
        return self._baselines.get((user_id, device_id))


class InMemoryAssignmentStore:
    """
    Versioned assignment records with compare-and-swap writes.

    Every successful write (and every ``publish``) awaits the registered
    listeners, mirroring a realtime store's change feed.
    """

    def __init__(self) -> None:
        self._assignments: dict[str, Assignment] = {}
        self._listeners: list[AssignmentListener] = []
        self._lock = asyncio.Lock()
        self.lookups = 0

    async def get(self, device_id: str) -> Assignment | None:
        self.lookups += 1
        return self._assignments.get(device_id)

    def on_change(self, listener: AssignmentListener) -> None:
        self._listeners.append(listener)

    async def compare_and_swap(
        self, device_id: str, expected_version: int | None, assignment: Assignment
    ) -> bool:
        async with self._lock:
            current = self._assignments.get(device_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            self._assignments[device_id] = assignment

        await self._notify(assignment)
        return True

    async def publish(self, assignment: Assignment) -> None:
        """Write unconditionally, as an external admin tool would."""
        async with self._lock:
            self._assignments[assignment.device_id] = assignment
        await self._notify(assignment)

    async def _notify(self, assignment: Assignment) -> None:
        for listener in list(self._listeners):
            await listener(assignment)


class QueueReadingSource:
    """Reading source fed by ``push``; ``close`` ends the subscription."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    async def push(self, device_id: str, reading: Reading) -> None:
        await self._queue.put(ReadingEvent(device_id=device_id, reading=reading))

    async def close(self) -> None:
        await self._queue.put(self._CLOSED)

    async def subscribe(self) -> AsyncIterator[ReadingEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


@dataclass
class DispatchedAlert:
    user_id: str
    verdict: DetectionVerdict
    delivery_id: str


@dataclass
class RecordingAlertSink:
    """
    Keeps every delivered alert.

    ``fail_times`` makes the next N calls return an error; ``delay_seconds``
    makes every call sleep first, for exercising timeouts.
    """

    fail_times: int = 0
    delay_seconds: float = 0.0
    delivered: list[DispatchedAlert] = field(default_factory=list)
    calls: int = 0
    _ids: count = field(default_factory=lambda: count(1))

    async def dispatch(
        self, user_id: str, verdict: DetectionVerdict
    ) -> Result[str, TransientCollaboratorFailure]:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_times > 0:
            self.fail_times -= 1
            return Result.err(TransientCollaboratorFailure("push gateway unavailable"))

        delivery_id = f"alert-{next(self._ids)}"
        self.delivered.append(DispatchedAlert(user_id, verdict, delivery_id))
        return Result.ok(delivery_id)


class LoggingAlertSink:
    """Writes alerts to the structured log instead of a push gateway."""

    def __init__(self) -> None:
        self._ids = count(1)
        self.logger = logger.bind(component="logging_alert_sink")

    async def dispatch(
        self, user_id: str, verdict: DetectionVerdict
    ) -> Result[str, TransientCollaboratorFailure]:
        delivery_id = f"log-{next(self._ids)}"
        self.logger.warning(
            "anxiety_alert",
            user_id=user_id,
            delivery_id=delivery_id,
            reason=verdict.reason.value,
            severity=verdict.severity.value,
            confidence=verdict.confidence_level,
            requires_confirmation=verdict.requires_user_confirmation,
            heart_rate=verdict.metrics.heart_rate,
            percentage_above_baseline=verdict.metrics.percentage_above_baseline,
        )
        return Result.ok(delivery_id)


@dataclass
class AuditRecord:
    user_id: str
    session_id: str
    verdict: DetectionVerdict
    dispatched: bool


@dataclass
class RecordingAuditSink:
    records: list[AuditRecord] = field(default_factory=list)
    fail: bool = False

    async def record(
        self, user_id: str, session_id: str, verdict: DetectionVerdict, dispatched: bool
    ) -> None:
        if self.fail:
            raise TransientCollaboratorFailure("audit store unavailable")
        self.records.append(AuditRecord(user_id, session_id, verdict, dispatched))
