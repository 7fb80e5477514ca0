"""
Device assignment and session state machine.

Routes every reading from the shared device to the user who currently has it
checked out, and guarantees a user never has two active sessions.
"""

import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import NamedTuple

import structlog

from anxiease.config import CacheConfig
from anxiease.domain.models import Assignment, AssignmentStatus, Session, SessionStatus, utc_now
from anxiease.errors import AssignmentConflict, InvariantViolation
from anxiease.services.collaborators import AssignmentProvider, AssignmentStore
from anxiease.services.concurrency import KeyedLocks, TTLCache

logger = structlog.get_logger(__name__)

MAX_CAS_ATTEMPTS = 3


class ActiveSession(NamedTuple):
    """Who owns a device's readings right now."""

    user_id: str
    session_id: str
    device_id: str


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


class SessionRegistry:
    """
    Tracks which user is bound to each device and which session is active.

    Concurrency: every read-modify-write of a user's sessions runs under that
    user's lock; binding and releasing a device runs under the device's lock.
    Different users never block each other.

    Invariant: at most one ``active`` session per user. Starting a session
    completes the previous one first. If hydrated data ever breaks the
    invariant, the newest session is kept and the rest are completed, with a
    structured error log.
    """

    def __init__(
        self,
        assignments: AssignmentProvider,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self.assignments = assignments
        self.config = config or CacheConfig()
        self._clock = clock
        self._new_id = id_factory

        self._sessions: dict[str, Session] = {}
        self._sessions_by_user: defaultdict[str, set[str]] = defaultdict(set)
        self._user_locks: KeyedLocks[str] = KeyedLocks()
        self._device_locks: KeyedLocks[str] = KeyedLocks()
        self._assignment_cache: TTLCache[str, Assignment] = TTLCache(
            self.config.assignment_ttl_seconds
        )
        self.logger = logger.bind(component="session_registry")

    # ------------------------------------------------------------------ routing

    async def resolve_active_session(self, device_id: str) -> ActiveSession | None:
        """
        Map a device to its current (user, session).

        Returns None when the device has no assignment or it was released;
        callers discard the reading in that case.
        """
        assignment = await self._current_assignment(device_id)
        if assignment is None or not assignment.is_active:
            self.logger.debug("device_not_assigned", device_id=device_id)
            return None

        return ActiveSession(
            user_id=assignment.assigned_user_id,
            session_id=assignment.active_session_id,
            device_id=device_id,
        )

    async def _current_assignment(self, device_id: str) -> Assignment | None:
        hit, cached = self._assignment_cache.get(device_id)
        if hit:
            return cached

        try:
            assignment = await self.assignments.get(device_id)
        except Exception as e:
            self.logger.error("assignment_lookup_failed", device_id=device_id, error=str(e))
            return None

        self._assignment_cache.put(device_id, assignment)
        return assignment

    # ------------------------------------------------------------------ sessions

    async def start_session(
        self, user_id: str, device_id: str, session_id: str | None = None
    ) -> str:
        """Start a new active session, completing any session the user already has open."""
        async with self._user_locks(user_id):
            now = self._clock()
            for previous in self._active_sessions(user_id):
                self._complete(previous, now, reason="superseded")

            session = Session(
                session_id=session_id or self._new_id(),
                user_id=user_id,
                device_id=device_id,
                started_at=now,
            )
            self._store(session)

        self.logger.info(
            "session_started", user_id=user_id, device_id=device_id, session_id=session.session_id
        )
        return session.session_id

    async def end_session(self, session_id: str) -> Session | None:
        """Complete a session. Already-completed sessions are left untouched."""
        session = self._sessions.get(session_id)
        if session is None:
            self.logger.warning("unknown_session_end_ignored", session_id=session_id)
            return None

        async with self._user_locks(session.user_id):
            session = self._sessions[session_id]
            if session.is_active:
                session = self._complete(session, self._clock(), reason="ended")
        return session

    async def active_session_for(self, user_id: str) -> Session | None:
        async with self._user_locks(user_id):
            active = self._active_sessions(user_id)
            if len(active) > 1:
                active = [self._resolve_duplicate_active(user_id, active)]
        return active[0] if active else None

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions_for(self, user_id: str) -> list[Session]:
        sessions = [self._sessions[sid] for sid in self._sessions_by_user.get(user_id, ())]
        return sorted(sessions, key=lambda s: s.started_at)

    async def load_sessions(self, sessions: Iterable[Session]) -> None:
        """Hydrate from an external store, repairing duplicate active sessions."""
        touched: set[str] = set()
        for session in sessions:
            self._store(session)
            touched.add(session.user_id)

        for user_id in touched:
            async with self._user_locks(user_id):
                active = self._active_sessions(user_id)
                if len(active) > 1:
                    self._resolve_duplicate_active(user_id, active)

        self.logger.info("sessions_loaded", users=len(touched), total_sessions=len(self._sessions))

    def prune_completed(self, retention: timedelta | None = None) -> int:
        """Forget completed sessions that ended before the retention cutoff."""
        retention = retention or timedelta(days=self.config.session_retention_days)
        cutoff = self._clock() - retention

        expired = [
            s
            for s in self._sessions.values()
            if not s.is_active and s.ended_at is not None and s.ended_at < cutoff
        ]
        for session in expired:
            del self._sessions[session.session_id]
            self._sessions_by_user[session.user_id].discard(session.session_id)
            if not self._sessions_by_user[session.user_id]:
                del self._sessions_by_user[session.user_id]
                self._user_locks.discard(session.user_id)

        if expired:
            self.logger.info("completed_sessions_pruned", count=len(expired))
        return len(expired)

    def _active_sessions(self, user_id: str) -> list[Session]:
        return [
            self._sessions[sid]
            for sid in self._sessions_by_user.get(user_id, ())
            if self._sessions[sid].is_active
        ]

    def _store(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        self._sessions_by_user[session.user_id].add(session.session_id)

    def _complete(self, session: Session, now: datetime, reason: str) -> Session:
        completed = session.model_copy(
            update={"status": SessionStatus.COMPLETED, "ended_at": now}
        )
        self._store(completed)
        self.logger.info(
            "session_completed",
            user_id=session.user_id,
            session_id=session.session_id,
            reason=reason,
        )
        return completed

    def _resolve_duplicate_active(self, user_id: str, active: list[Session]) -> Session:
        ordered = sorted(active, key=lambda s: s.started_at)
        keep, stale = ordered[-1], ordered[:-1]

        violation = InvariantViolation(
            f"user {user_id} has {len(active)} active sessions; keeping {keep.session_id}"
        )
        self.logger.error(
            "session_invariant_violation",
            user_id=user_id,
            kept_session_id=keep.session_id,
            completed_session_ids=[s.session_id for s in stale],
            error=str(violation),
        )

        now = self._clock()
        for session in stale:
            self._complete(session, now, reason="invariant_repair")
        return keep

    # --------------------------------------------------------------- assignment

    def _store_or_raise(self) -> AssignmentStore:
        if not isinstance(self.assignments, AssignmentStore):
            raise TypeError(
                f"{type(self.assignments).__name__} does not support compare_and_swap writes"
            )
        return self.assignments

    async def assign_device(self, device_id: str, user_id: str) -> Assignment:
        """
        Bind a device to a user, starting a fresh session.

        The assignment write is a compare-and-swap on the record's version, so
        two concurrent binders cannot both win. The losing attempt rolls back
        its session and retries against the new state.
        """
        store = self._store_or_raise()

        async with self._device_locks(device_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                current = await store.get(device_id)
                if current is not None and current.is_active and current.assigned_user_id == user_id:
                    return current

                session_id = await self.start_session(user_id, device_id)
                assignment = Assignment(
                    device_id=device_id,
                    assigned_user_id=user_id,
                    active_session_id=session_id,
                    assigned_at=self._clock(),
                    version=current.version + 1 if current else 0,
                )

                swapped = await store.compare_and_swap(
                    device_id, current.version if current else None, assignment
                )
                if swapped:
                    if current is not None and current.is_active:
                        await self.end_session(current.active_session_id)
                    self._assignment_cache.invalidate(device_id)
                    self.logger.info(
                        "device_assigned",
                        device_id=device_id,
                        user_id=user_id,
                        session_id=session_id,
                        previous_user_id=current.assigned_user_id if current else None,
                    )
                    return assignment

                await self.end_session(session_id)
                self.logger.warning(
                    "assignment_cas_conflict", device_id=device_id, attempt=attempt
                )

        raise AssignmentConflict(f"could not assign {device_id} to {user_id}")

    async def release_device(self, device_id: str) -> Assignment | None:
        """Free a device. Its active session is completed."""
        store = self._store_or_raise()

        async with self._device_locks(device_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                current = await store.get(device_id)
                if current is None or not current.is_active:
                    return current

                released = current.model_copy(
                    update={"status": AssignmentStatus.RELEASED, "version": current.version + 1}
                )
                if await store.compare_and_swap(device_id, current.version, released):
                    await self.end_session(current.active_session_id)
                    self._assignment_cache.invalidate(device_id)
                    self.logger.info(
                        "device_released",
                        device_id=device_id,
                        user_id=current.assigned_user_id,
                        session_id=current.active_session_id,
                    )
                    return released

                self.logger.warning("release_cas_conflict", device_id=device_id, attempt=attempt)

        raise AssignmentConflict(f"could not release {device_id}")

    async def handle_assignment_change(self, assignment: Assignment) -> list[str]:
        """
        React to an assignment written by someone else.

        Returns the ids of sessions that ended because of the change, so the
        caller can drop their history windows.
        """
        self._assignment_cache.invalidate(assignment.device_id)

        if not assignment.is_active:
            ended = await self.end_session(assignment.active_session_id)
            return [ended.session_id] if ended else []

        if assignment.active_session_id not in self._sessions:
            # Bound by an external admin action; adopt its session id
            await self.start_session(
                assignment.assigned_user_id,
                assignment.device_id,
                session_id=assignment.active_session_id,
            )

        # Whoever wore the device before loses their session on it
        displaced = [
            s.session_id
            for s in self._sessions.values()
            if s.is_active
            and s.device_id == assignment.device_id
            and s.session_id != assignment.active_session_id
        ]
        for session_id in displaced:
            await self.end_session(session_id)
        return displaced
