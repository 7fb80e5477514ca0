"""
Protocols for the collaborators the engine calls but does not own.

Why Protocol over ABC: Structural typing, easier mocking, less coupling.
Concrete implementations (realtime tree store, relational audit store, push
gateway) live outside this package; ``anxiease.adapters.memory`` provides
in-process versions for tests and local simulation.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol, runtime_checkable

from anxiease.domain.models import Assignment, Baseline, DetectionVerdict, ReadingEvent
from anxiease.errors import Result, TransientCollaboratorFailure

AssignmentListener = Callable[[Assignment], Awaitable[None]]


@runtime_checkable
class ReadingSource(Protocol):
    """Pushes readings for devices as they arrive."""

    def subscribe(self) -> AsyncIterator[ReadingEvent]:
        ...


@runtime_checkable
class BaselineProvider(Protocol):
    async def get(self, user_id: str, device_id: str) -> Baseline | None:
        ...


@runtime_checkable
class AssignmentProvider(Protocol):
    async def get(self, device_id: str) -> Assignment | None:
        ...

    def on_change(self, listener: AssignmentListener) -> None:
        """Register a coroutine called whenever an assignment is created or released."""
        ...


@runtime_checkable
class AssignmentStore(AssignmentProvider, Protocol):
    """Write side used when the engine itself binds or releases a device."""

    async def compare_and_swap(
        self, device_id: str, expected_version: int | None, assignment: Assignment
    ) -> bool:
        """
        Replace the device's assignment only if its current version matches.

        ``expected_version=None`` means "only if no assignment exists yet".
        """
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Renders and delivers the human-facing notification for a verdict."""

    async def dispatch(
        self, user_id: str, verdict: DetectionVerdict
    ) -> Result[str, TransientCollaboratorFailure]:
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Fire-and-forget record of every triggered verdict."""

    async def record(
        self, user_id: str, session_id: str, verdict: DetectionVerdict, dispatched: bool
    ) -> None:
        ...
