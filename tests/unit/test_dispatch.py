"""
End-to-end tests for the dispatch pipeline.

Uses the in-memory collaborators with caching disabled so every reading sees
the latest assignment and baseline.
"""

from dataclasses import dataclass
from datetime import datetime

import pytest

from anxiease.adapters.memory import (
    InMemoryAssignmentStore,
    InMemoryBaselineProvider,
    QueueReadingSource,
    RecordingAlertSink,
    RecordingAuditSink,
)
from anxiease.config import AppConfig, CacheConfig, DispatchConfig
from anxiease.domain.models import (
    Assignment,
    Baseline,
    DetectionReason,
    Reading,
    ReadingEvent,
    SeverityLevel,
    UserResponse,
)
from anxiease.services.dispatch import (
    CircuitBreakerState,
    DiscardReason,
    DispatchCoordinator,
    PipelineStage,
)
from tests.unit.factories import FakeClock, reading


@dataclass
class Harness:
    coordinator: DispatchCoordinator
    assignments: InMemoryAssignmentStore
    baselines: InMemoryBaselineProvider
    alerts: RecordingAlertSink
    audit: RecordingAuditSink


def make_harness(
    clock: FakeClock,
    baselines: list[Baseline],
    alerts: RecordingAlertSink | None = None,
    audit: RecordingAuditSink | None = None,
    dispatch: DispatchConfig | None = None,
) -> Harness:
    assignments = InMemoryAssignmentStore()
    provider = InMemoryBaselineProvider(baselines)
    alerts = alerts or RecordingAlertSink()
    audit = audit or RecordingAuditSink()
    config = AppConfig(
        cache=CacheConfig(baseline_ttl_seconds=0, assignment_ttl_seconds=0),
        dispatch=dispatch or DispatchConfig(timeout_seconds=0.5, retry_delay_seconds=0),
    )
    coordinator = DispatchCoordinator.from_config(
        assignments=assignments,
        baseline_provider=provider,
        alert_sink=alerts,
        audit_sink=audit,
        config=config,
        clock=clock,
    )
    return Harness(coordinator, assignments, provider, alerts, audit)


@pytest.fixture
def harness(clock: FakeClock, baseline: Baseline) -> Harness:
    return make_harness(clock, [baseline])


CRITICAL_SPO2 = {"spo2": 85.0}


class TestPipeline:
    @pytest.mark.asyncio
    async def test_sustained_heart_rate_dispatches_once(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        await coordinator.assign_device("band-01", "user-1")

        outcomes = [
            await coordinator.process_reading("band-01", reading(s, heart_rate=90))
            for s in (0, 10, 20, 30)
        ]
        await coordinator.wait_for_inflight()

        assert [o.stage for o in outcomes] == [
            PipelineStage.DISCARDED,
            PipelineStage.DISCARDED,
            PipelineStage.DISPATCHED,
            PipelineStage.SUPPRESSED,
        ]
        assert outcomes[0].discard_reason == DiscardReason.NOT_TRIGGERED
        assert outcomes[2].verdict.reason == DetectionReason.HIGH_HR

        assert len(harness.alerts.delivered) == 1
        assert harness.alerts.delivered[0].user_id == "user-1"
        assert [r.dispatched for r in harness.audit.records] == [True, False]

    @pytest.mark.asyncio
    async def test_unassigned_device_is_discarded(self, harness: Harness) -> None:
        outcome = await harness.coordinator.process_reading(
            "band-01", reading(0, **CRITICAL_SPO2)
        )

        assert outcome.stage == PipelineStage.DISCARDED
        assert outcome.discard_reason == DiscardReason.NOT_ASSIGNED
        assert len(harness.coordinator.history) == 0
        assert harness.alerts.calls == 0

    @pytest.mark.asyncio
    async def test_missing_baseline_fails_closed(self, harness: Harness) -> None:
        await harness.coordinator.assign_device("band-01", "user-without-baseline")

        outcome = await harness.coordinator.process_reading(
            "band-01", reading(0, **CRITICAL_SPO2)
        )
        await harness.coordinator.wait_for_inflight()

        assert outcome.discard_reason == DiscardReason.NO_BASELINE
        assert outcome.verdict is None
        assert harness.alerts.calls == 0
        assert harness.audit.records == []

    @pytest.mark.asyncio
    async def test_critical_spo2_dispatches_immediately(self, harness: Harness) -> None:
        assignment = await harness.coordinator.assign_device("band-01", "user-1")

        outcome = await harness.coordinator.process_reading(
            "band-01", reading(0, **CRITICAL_SPO2)
        )
        await harness.coordinator.wait_for_inflight()

        assert outcome.stage == PipelineStage.DISPATCHED
        assert outcome.session_id == assignment.active_session_id
        assert outcome.verdict.severity == SeverityLevel.CRITICAL
        assert harness.alerts.delivered[0].verdict.reason == DetectionReason.CRITICAL_SPO2

        window = harness.coordinator.history.window(assignment.active_session_id)
        assert window[0].session_id == assignment.active_session_id

    @pytest.mark.asyncio
    async def test_pipeline_error_degrades_to_discard(
        self, harness: Harness, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await harness.coordinator.assign_device("band-01", "user-1")

        def broken_evaluate(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(harness.coordinator.detector, "evaluate", broken_evaluate)
        outcome = await harness.coordinator.process_reading("band-01", reading(0))

        assert outcome.stage == PipelineStage.DISCARDED
        assert outcome.discard_reason == DiscardReason.PIPELINE_ERROR


class TestAlertDelivery:
    @pytest.mark.asyncio
    async def test_failed_delivery_is_dropped_and_slot_stays_reserved(
        self, clock: FakeClock, baseline: Baseline
    ) -> None:
        harness = make_harness(
            clock,
            [baseline],
            alerts=RecordingAlertSink(fail_times=5),
            dispatch=DispatchConfig(max_retries=1, retry_delay_seconds=0),
        )
        await harness.coordinator.assign_device("band-01", "user-1")

        first = await harness.coordinator.process_reading("band-01", reading(0, **CRITICAL_SPO2))
        await harness.coordinator.wait_for_inflight()
        second = await harness.coordinator.process_reading(
            "band-01", reading(10, **CRITICAL_SPO2)
        )

        assert first.stage == PipelineStage.DISPATCHED
        assert harness.alerts.calls == 2
        assert harness.alerts.delivered == []
        assert second.stage == PipelineStage.SUPPRESSED

    @pytest.mark.asyncio
    async def test_retry_recovers_from_one_failure(
        self, clock: FakeClock, baseline: Baseline
    ) -> None:
        harness = make_harness(clock, [baseline], alerts=RecordingAlertSink(fail_times=1))
        await harness.coordinator.assign_device("band-01", "user-1")

        await harness.coordinator.process_reading("band-01", reading(0, **CRITICAL_SPO2))
        await harness.coordinator.wait_for_inflight()

        assert harness.alerts.calls == 2
        assert len(harness.alerts.delivered) == 1

    @pytest.mark.asyncio
    async def test_slow_sink_times_out(self, clock: FakeClock, baseline: Baseline) -> None:
        harness = make_harness(
            clock,
            [baseline],
            alerts=RecordingAlertSink(delay_seconds=0.5),
            dispatch=DispatchConfig(timeout_seconds=0.05, max_retries=0, retry_delay_seconds=0),
        )
        await harness.coordinator.assign_device("band-01", "user-1")

        outcome = await harness.coordinator.process_reading(
            "band-01", reading(0, **CRITICAL_SPO2)
        )
        await harness.coordinator.wait_for_inflight()

        assert outcome.stage == PipelineStage.DISPATCHED
        assert harness.alerts.calls == 1
        assert harness.alerts.delivered == []

    @pytest.mark.asyncio
    async def test_open_circuit_skips_the_sink(self, clock: FakeClock, baseline: Baseline) -> None:
        harness = make_harness(
            clock,
            [baseline],
            alerts=RecordingAlertSink(fail_times=10),
            dispatch=DispatchConfig(
                max_retries=0, retry_delay_seconds=0, circuit_failure_threshold=1
            ),
        )
        coordinator = harness.coordinator
        await coordinator.assign_device("band-01", "user-1")

        await coordinator.process_reading("band-01", reading(0, **CRITICAL_SPO2))
        await coordinator.wait_for_inflight()
        coordinator.rate_limiter.clear()
        await coordinator.process_reading("band-01", reading(5, **CRITICAL_SPO2))
        await coordinator.wait_for_inflight()

        assert coordinator.alert_circuit_breaker.state == "open"
        assert harness.alerts.calls == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block_alert(
        self, clock: FakeClock, baseline: Baseline
    ) -> None:
        harness = make_harness(clock, [baseline], audit=RecordingAuditSink(fail=True))
        await harness.coordinator.assign_device("band-01", "user-1")

        outcome = await harness.coordinator.process_reading(
            "band-01", reading(0, **CRITICAL_SPO2)
        )
        await harness.coordinator.wait_for_inflight()

        assert outcome.stage == PipelineStage.DISPATCHED
        assert len(harness.alerts.delivered) == 1

    @pytest.mark.asyncio
    async def test_user_denial_extends_cooldown(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        await coordinator.assign_device("band-01", "user-1")

        await coordinator.process_reading("band-01", reading(0, **CRITICAL_SPO2))
        await coordinator.record_user_response("user-1", SeverityLevel.CRITICAL, UserResponse.NO)
        outcome = await coordinator.process_reading("band-01", reading(40, **CRITICAL_SPO2))

        assert outcome.stage == PipelineStage.SUPPRESSED

    @pytest.mark.asyncio
    async def test_naive_timestamp_after_user_response_is_evaluated(
        self, harness: Harness
    ) -> None:
        coordinator = harness.coordinator
        await coordinator.assign_device("band-01", "user-1")
        await coordinator.record_user_response("user-1", SeverityLevel.CRITICAL, UserResponse.NO)

        outcome = await coordinator.process_reading(
            "band-01", Reading(timestamp=datetime(2025, 3, 1, 9, 0), heart_rate=72, spo2=85)
        )

        assert outcome.discard_reason is None
        assert outcome.verdict.reason == DetectionReason.CRITICAL_SPO2
        assert outcome.stage == PipelineStage.SUPPRESSED

    @pytest.mark.asyncio
    async def test_denial_expires_on_reading_time_when_wall_clock_runs_ahead(
        self, harness: Harness, clock: FakeClock
    ) -> None:
        coordinator = harness.coordinator
        await coordinator.assign_device("band-01", "user-1")
        clock.advance(3600)

        await coordinator.process_reading("band-01", reading(0, **CRITICAL_SPO2))
        await coordinator.record_user_response("user-1", SeverityLevel.CRITICAL, UserResponse.NO)
        held = await coordinator.process_reading("band-01", reading(300, **CRITICAL_SPO2))
        released = await coordinator.process_reading("band-01", reading(601, **CRITICAL_SPO2))
        await coordinator.wait_for_inflight()

        assert held.stage == PipelineStage.SUPPRESSED
        assert released.stage == PipelineStage.DISPATCHED
        assert len(harness.alerts.delivered) == 2


class TestSessionsAndAssignments:
    @pytest.mark.asyncio
    async def test_release_discards_window_and_stops_routing(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        assignment = await coordinator.assign_device("band-01", "user-1")
        await coordinator.process_reading("band-01", reading(0))

        await coordinator.release_device("band-01")
        outcome = await coordinator.process_reading("band-01", reading(10))

        assert assignment.active_session_id not in coordinator.history
        assert outcome.discard_reason == DiscardReason.NOT_ASSIGNED

    @pytest.mark.asyncio
    async def test_external_reassignment_switches_user(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        first = await coordinator.assign_device("band-01", "user-1")
        await coordinator.process_reading("band-01", reading(0))

        await harness.assignments.publish(
            Assignment(
                device_id="band-01",
                assigned_user_id="user-2",
                active_session_id="admin-session",
                version=first.version + 1,
            )
        )
        outcome = await coordinator.process_reading("band-01", reading(10))

        assert first.active_session_id not in coordinator.history
        assert not coordinator.registry.get_session(first.active_session_id).is_active
        assert outcome.user_id == "user-2"
        assert outcome.session_id == "admin-session"
        assert outcome.discard_reason == DiscardReason.NO_BASELINE

    @pytest.mark.asyncio
    async def test_end_session_discards_window(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        assignment = await coordinator.assign_device("band-01", "user-1")
        await coordinator.process_reading("band-01", reading(0))

        await coordinator.end_session(assignment.active_session_id)

        assert assignment.active_session_id not in coordinator.history
        assert await coordinator.registry.active_session_for("user-1") is None


class TestIngestion:
    @pytest.mark.asyncio
    async def test_run_keeps_per_device_order(self, clock: FakeClock) -> None:
        harness = make_harness(
            clock,
            [
                Baseline(user_id="user-1", device_id="band-01", resting_heart_rate=70),
                Baseline(user_id="user-2", device_id="band-02", resting_heart_rate=60),
            ],
        )
        coordinator = harness.coordinator
        a = await coordinator.assign_device("band-01", "user-1")
        b = await coordinator.assign_device("band-02", "user-2")

        source = QueueReadingSource()
        for second in range(0, 50, 10):
            await source.push("band-01", reading(second, heart_rate=90))
            await source.push("band-02", reading(second, heart_rate=62))
        await source.close()

        await coordinator.run(source)
        await coordinator.stop()

        for assignment in (a, b):
            window = coordinator.history.window(assignment.active_session_id)
            assert len(window) == 5
            assert [r.timestamp for r in window] == sorted(r.timestamp for r in window)

        assert [d.user_id for d in harness.alerts.delivered] == ["user-1"]

    @pytest.mark.asyncio
    async def test_lifecycle_drains_submitted_readings(self, harness: Harness) -> None:
        coordinator = harness.coordinator
        assignment = await coordinator.assign_device("band-01", "user-1")

        async with coordinator.lifecycle():
            for second in (0, 10, 20):
                await coordinator.submit(
                    ReadingEvent(device_id="band-01", reading=reading(second, heart_rate=90))
                )

        assert coordinator.history.size(assignment.active_session_id) == 3
        assert len(harness.alerts.delivered) == 1


class TestCircuitBreakerState:
    def test_opens_after_threshold(self, clock: FakeClock) -> None:
        breaker = CircuitBreakerState(failure_threshold=2, recovery_timeout=30, clock=clock)

        breaker.record_failure()
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == "open"
        assert not breaker.can_execute()

    def test_half_open_after_recovery_then_closes(self, clock: FakeClock) -> None:
        breaker = CircuitBreakerState(failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()

        clock.advance(30)
        assert breaker.can_execute()
        assert breaker.state == "half-open"

        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    def test_failure_while_half_open_reopens(self, clock: FakeClock) -> None:
        breaker = CircuitBreakerState(failure_threshold=3, recovery_timeout=30, clock=clock)
        breaker.state = "half-open"

        breaker.record_failure()
        assert breaker.state == "open"
