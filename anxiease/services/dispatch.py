"""
End-to-end pipeline for one reading, and the ingestion loop around it.

Per reading the coordinator walks a straight line:

    Routed -> Windowed -> Evaluated -> Suppressed | Dispatched

with a terminal ``Discarded`` state when the device is unassigned, the user
has no baseline, or the verdict did not trigger. Nothing is retried inside the
pipeline: any failure degrades to "no alert this round" and the next reading
starts over from ``Routed``.

Architecture pattern: per-device single-consumer queues with circuit breakers
around the alert gateway.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog

from anxiease.config import AppConfig, DispatchConfig, get_config
from anxiease.domain.models import (
    Assignment,
    DetectionVerdict,
    Reading,
    ReadingEvent,
    SeverityLevel,
    UserResponse,
    utc_now,
)
from anxiease.errors import TransientCollaboratorFailure
from anxiease.observability import configure_logging
from anxiease.services.baselines import BaselineStore
from anxiease.services.collaborators import (
    AlertSink,
    AssignmentProvider,
    AuditSink,
    BaselineProvider,
    ReadingSource,
)
from anxiease.services.detector import MultiParameterDetector
from anxiease.services.history_window import HistoryWindowStore
from anxiease.services.rate_limiter import RateLimiter
from anxiease.services.session_registry import SessionRegistry
from anxiease.services.thresholds import derive_thresholds

logger = structlog.get_logger(__name__)


class PipelineStage(str, Enum):
    DISCARDED = "discarded"
    SUPPRESSED = "suppressed"
    DISPATCHED = "dispatched"


class DiscardReason(str, Enum):
    NOT_ASSIGNED = "not_assigned"
    NO_BASELINE = "no_baseline"
    NOT_TRIGGERED = "not_triggered"
    PIPELINE_ERROR = "pipeline_error"


@dataclass
class PipelineOutcome:
    """Where one reading ended up."""

    stage: PipelineStage
    device_id: str
    user_id: str | None = None
    session_id: str | None = None
    verdict: DetectionVerdict | None = None
    discard_reason: DiscardReason | None = None


class CircuitBreakerState:
    """Simple circuit breaker for alert gateway calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def can_execute(self) -> bool:
        """Check if operation can execute based on circuit breaker state."""

        if self.state == "closed":
            return True

        if self.state == "open":
            if self.last_failure_time:
                time_since_failure = self._clock() - self.last_failure_time
                if time_since_failure.total_seconds() >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False

        if self.state == "half-open":
            return True

        return False

    def record_success(self) -> None:
        """Record successful operation."""
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.failure_count >= self.failure_threshold or self.state == "half-open":
            self.state = "open"


class DispatchCoordinator:
    """
    Orchestrates session routing, windowing, detection, rate limiting and
    hand-off to the alert and audit sinks.

    Ordering: readings for one device go through a single-consumer queue, so a
    session's window appends and rate-limit stamps happen in arrival order.
    Different devices run concurrently.

    Sink calls run as background tasks with a timeout and a small fixed number of
    retries, so a slow gateway never stalls ingestion.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        history: HistoryWindowStore,
        baselines: BaselineStore,
        detector: MultiParameterDetector,
        rate_limiter: RateLimiter,
        alert_sink: AlertSink,
        audit_sink: AuditSink | None = None,
        config: DispatchConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.history = history
        self.baselines = baselines
        self.detector = detector
        self.rate_limiter = rate_limiter
        self.alert_sink = alert_sink
        self.audit_sink = audit_sink
        self.config = config or DispatchConfig()
        self.logger = logger.bind(component="dispatch_coordinator")

        self.alert_circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_seconds,
            clock=clock,
        )

        self._queues: dict[str, asyncio.Queue[Reading]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        # Event time of the newest reading routed to each user
        self._last_event_at: dict[str, datetime] = {}

        self.registry.assignments.on_change(self._on_assignment_change)

    @classmethod
    def from_config(
        cls,
        *,
        assignments: AssignmentProvider,
        baseline_provider: BaselineProvider,
        alert_sink: AlertSink,
        audit_sink: AuditSink | None = None,
        config: AppConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "DispatchCoordinator":
        """Wire every component from one AppConfig."""
        config = config or get_config()
        configure_logging(config.logging)

        return cls(
            registry=SessionRegistry(assignments, config.cache, clock=clock),
            history=HistoryWindowStore(config.window, clock=clock),
            baselines=BaselineStore(baseline_provider, config.cache),
            detector=MultiParameterDetector(config.detection),
            rate_limiter=RateLimiter(config.rate_limit, clock=clock),
            alert_sink=alert_sink,
            audit_sink=audit_sink,
            config=config.dispatch,
            clock=clock,
        )

    # --------------------------------------------------------------- pipeline

    async def process_reading(self, device_id: str, reading: Reading) -> PipelineOutcome:
        """Run one reading through the pipeline. Never raises."""
        try:
            return await self._run_pipeline(device_id, reading)
        except Exception as e:
            self.logger.exception("pipeline_failed", device_id=device_id, error=str(e))
            return PipelineOutcome(
                stage=PipelineStage.DISCARDED,
                device_id=device_id,
                discard_reason=DiscardReason.PIPELINE_ERROR,
            )

    async def _run_pipeline(self, device_id: str, reading: Reading) -> PipelineOutcome:
        # Routed
        routed = await self.registry.resolve_active_session(device_id)
        if routed is None:
            self.logger.debug("reading_discarded", device_id=device_id, reason="not_assigned")
            return PipelineOutcome(
                stage=PipelineStage.DISCARDED,
                device_id=device_id,
                discard_reason=DiscardReason.NOT_ASSIGNED,
            )

        user_id, session_id = routed.user_id, routed.session_id
        reading = reading.model_copy(update={"session_id": session_id})
        latest = self._last_event_at.get(user_id)
        if latest is None or reading.timestamp > latest:
            self._last_event_at[user_id] = reading.timestamp

        # Windowed
        self.history.append(session_id, reading)

        # Evaluated (fail closed without a baseline)
        lookup = await self.baselines.require(user_id, device_id)
        if lookup.is_err():
            self.logger.info(
                "reading_discarded",
                device_id=device_id,
                user_id=user_id,
                reason="no_baseline",
                error=str(lookup.unwrap_err()),
            )
            return PipelineOutcome(
                stage=PipelineStage.DISCARDED,
                device_id=device_id,
                user_id=user_id,
                session_id=session_id,
                discard_reason=DiscardReason.NO_BASELINE,
            )
        baseline = lookup.unwrap()

        recent = self.history.recent_within(
            session_id, self.detector.config.sustain_seconds, now=reading.timestamp
        )
        verdict = self.detector.evaluate(reading, recent, derive_thresholds(baseline))
        if not verdict.triggered:
            return PipelineOutcome(
                stage=PipelineStage.DISCARDED,
                device_id=device_id,
                user_id=user_id,
                session_id=session_id,
                verdict=verdict,
                discard_reason=DiscardReason.NOT_TRIGGERED,
            )

        # Suppressed | Dispatched
        now = reading.timestamp
        if not await self.rate_limiter.should_dispatch(user_id, verdict.severity, now):
            self._spawn(self._audit(user_id, session_id, verdict, dispatched=False))
            return PipelineOutcome(
                stage=PipelineStage.SUPPRESSED,
                device_id=device_id,
                user_id=user_id,
                session_id=session_id,
                verdict=verdict,
            )

        await self.rate_limiter.record_dispatch(user_id, verdict.severity, now)
        self._spawn(self._deliver_alert(user_id, session_id, verdict))
        self._spawn(self._audit(user_id, session_id, verdict, dispatched=True))

        self.logger.info(
            "alert_handed_off",
            user_id=user_id,
            session_id=session_id,
            reason=verdict.reason.value,
            severity=verdict.severity.value,
            confidence=verdict.confidence_level,
        )
        return PipelineOutcome(
            stage=PipelineStage.DISPATCHED,
            device_id=device_id,
            user_id=user_id,
            session_id=session_id,
            verdict=verdict,
        )

    # ------------------------------------------------------------ collaborators

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _deliver_alert(self, user_id: str, session_id: str, verdict: DetectionVerdict) -> None:
        """Call the alert sink with a timeout and at most ``max_retries`` retries."""
        if not self.alert_circuit_breaker.can_execute():
            self.logger.warning("alert_sink_circuit_open", user_id=user_id, session_id=session_id)
            return

        attempts = self.config.max_retries + 1
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self.alert_sink.dispatch(user_id, verdict),
                    timeout=self.config.timeout_seconds,
                )
                if result.is_ok():
                    self.alert_circuit_breaker.record_success()
                    self.logger.info(
                        "alert_dispatched",
                        user_id=user_id,
                        session_id=session_id,
                        delivery_id=result.unwrap(),
                        attempt=attempt,
                    )
                    return
                last_error = result.unwrap_err()
            except TimeoutError:
                last_error = TransientCollaboratorFailure(
                    f"alert sink timed out after {self.config.timeout_seconds}s"
                )
            except Exception as e:
                last_error = TransientCollaboratorFailure(str(e))

            self.logger.warning(
                "alert_dispatch_attempt_failed",
                user_id=user_id,
                attempt=attempt,
                error=str(last_error),
            )
            if attempt < attempts and self.config.retry_delay_seconds:
                await asyncio.sleep(self.config.retry_delay_seconds)

        self.alert_circuit_breaker.record_failure()
        self.logger.error(
            "alert_dispatch_failed",
            user_id=user_id,
            session_id=session_id,
            reason=verdict.reason.value,
            error=str(last_error),
            circuit_state=self.alert_circuit_breaker.state,
        )

    async def _audit(
        self, user_id: str, session_id: str, verdict: DetectionVerdict, dispatched: bool
    ) -> None:
        if self.audit_sink is None:
            return
        try:
            await asyncio.wait_for(
                self.audit_sink.record(user_id, session_id, verdict, dispatched),
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            self.logger.warning(
                "audit_record_failed", user_id=user_id, session_id=session_id, error=str(e)
            )

    async def wait_for_inflight(self) -> None:
        """Wait until every background sink call has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---------------------------------------------------------------- ingestion

    async def submit(self, event: ReadingEvent) -> None:
        """Queue a reading behind earlier readings from the same device."""
        queue = self._queues.get(event.device_id)
        if queue is None:
            queue = self._queues[event.device_id] = asyncio.Queue(maxsize=self.config.queue_size)
            self._workers[event.device_id] = asyncio.create_task(
                self._device_worker(event.device_id, queue),
                name=f"device-worker-{event.device_id}",
            )
        await queue.put(event.reading)

    async def _device_worker(self, device_id: str, queue: "asyncio.Queue[Reading]") -> None:
        while True:
            reading = await queue.get()
            try:
                await self.process_reading(device_id, reading)
            finally:
                queue.task_done()

    async def run(self, source: ReadingSource) -> None:
        """Consume a reading source until it is exhausted, then drain."""
        self.logger.info("ingestion_started")
        try:
            async for event in source.subscribe():
                await self.submit(event)
            await self.drain()
        except asyncio.CancelledError:
            self.logger.info("ingestion_cancelled")
            raise
        finally:
            self.logger.info("ingestion_stopped")

    async def drain(self) -> None:
        """Wait for queued readings and their background sink calls."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))
        await self.wait_for_inflight()

    async def stop(self) -> None:
        """Drain, then cancel the per-device workers."""
        await self.drain()
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self.logger.info("dispatch_coordinator_stopped")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["DispatchCoordinator"]:
        """Async context manager that always stops workers on exit."""
        try:
            yield self
        finally:
            await self.stop()

    # ---------------------------------------------------- sessions & responses

    async def assign_device(self, device_id: str, user_id: str) -> Assignment:
        return await self.registry.assign_device(device_id, user_id)

    async def release_device(self, device_id: str) -> Assignment | None:
        released = await self.registry.release_device(device_id)
        if released is not None:
            self.history.discard(released.active_session_id)
        return released

    async def end_session(self, session_id: str) -> None:
        await self.registry.end_session(session_id)
        self.history.discard(session_id)

    async def record_user_response(
        self,
        user_id: str,
        severity: SeverityLevel,
        response: UserResponse,
        at: datetime | None = None,
    ) -> None:
        """
        Forward a confirmation answer to the rate limiter.

        Cooldowns run on reading time, so the answer is stamped with the newest
        reading seen for the user unless ``at`` is given.
        """
        at = at or self._last_event_at.get(user_id)
        await self.rate_limiter.record_user_response(user_id, severity, response, at)

    async def _on_assignment_change(self, assignment: Assignment) -> None:
        try:
            ended = await self.registry.handle_assignment_change(assignment)
        except Exception as e:
            self.logger.error(
                "assignment_change_failed", device_id=assignment.device_id, error=str(e)
            )
            return

        for session_id in ended:
            self.history.discard(session_id)
        self.baselines.invalidate(assignment.assigned_user_id, assignment.device_id)


async def main() -> None:
    """Simulate one user wearing the shared device through an anxiety episode."""
    from datetime import timedelta

    from anxiease.adapters.memory import (
        InMemoryAssignmentStore,
        InMemoryBaselineProvider,
        LoggingAlertSink,
        RecordingAuditSink,
    )
    from anxiease.domain.models import Baseline

    assignments = InMemoryAssignmentStore()
    baselines = InMemoryBaselineProvider()
    audit = RecordingAuditSink()

    coordinator = DispatchCoordinator.from_config(
        assignments=assignments,
        baseline_provider=baselines,
        alert_sink=LoggingAlertSink(),
        audit_sink=audit,
    )

    await baselines.put(Baseline(user_id="user-1", device_id="band-01", resting_heart_rate=72))
    await coordinator.assign_device("band-01", "user-1")

    start = utc_now()
    heart_rates = [74, 75, 90, 92, 95, 99, 104, 110, 118, 121, 80, 76]

    async with coordinator.lifecycle():
        for i, hr in enumerate(heart_rates):
            reading = Reading(
                timestamp=start + timedelta(seconds=5 * i),
                heart_rate=hr,
                spo2=97,
                movement_level=8,
            )
            outcome = await coordinator.process_reading("band-01", reading)
            reason = outcome.verdict.reason.value if outcome.verdict else "-"
            print(f"HR {hr:>3} -> {outcome.stage.value:<10} {reason}")

    print(f"Audit records: {len(audit.records)}")


if __name__ == "__main__":
    asyncio.run(main())
