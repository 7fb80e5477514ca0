"""
Severity-scaled alert cooldowns.

More severe states get shorter cooldowns so urgent alerts are never held back
for long. The policy is "most recent alert wins": a verdict that lands inside
a cooldown is dropped, not queued or retried.

A user's answer to a confirmation prompt stretches the cooldown for that
severity for a while. "No, I'm not anxious" stretches it the most and
"not now" a bit less. "Yes" keeps the normal cooldown.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from math import ceil

import structlog

from anxiease.config import CooldownPolicy, RateLimitConfig
from anxiease.domain.models import RateLimitEntry, RateLimitStatus, SeverityLevel, UserResponse, utc_now
from anxiease.services.concurrency import KeyedLocks

logger = structlog.get_logger(__name__)

RateLimitKey = tuple[str, SeverityLevel]


class RateLimiter:
    """
    Decides whether a triggered verdict may be dispatched.

    ``should_dispatch`` is an atomic check-and-reserve per (user, severity):
    when it answers True it has already stamped the key, so a second call
    inside the cooldown answers False even if ``record_dispatch`` has not run
    yet. Each key has its own lock; distinct keys never contend.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._entries: dict[RateLimitKey, RateLimitEntry] = {}
        self._locks: KeyedLocks[RateLimitKey] = KeyedLocks()
        self.logger = logger.bind(component="rate_limiter")

    def cooldown_for(
        self, entry: RateLimitEntry | None, severity: SeverityLevel, now: datetime
    ) -> timedelta:
        policy = self.config.policy_for(severity)
        return timedelta(seconds=self._cooldown_seconds(policy, entry, now))

    def _cooldown_seconds(
        self, policy: CooldownPolicy, entry: RateLimitEntry | None, now: datetime
    ) -> float:
        if entry is None or entry.last_user_response is None or entry.last_user_response_at is None:
            return policy.base_seconds

        # A response stamped after ``now`` counts as fresh
        response_age = max(0.0, (now - entry.last_user_response_at).total_seconds())
        if response_age >= policy.response_window_seconds:
            return policy.base_seconds

        if entry.last_user_response == UserResponse.NO:
            return policy.denied_seconds
        if entry.last_user_response == UserResponse.NOT_NOW:
            return policy.dismissed_seconds
        return policy.base_seconds

    async def should_dispatch(
        self, user_id: str, severity: SeverityLevel, now: datetime | None = None
    ) -> bool:
        now = now or self._clock()
        key = (user_id, severity)

        async with self._locks(key):
            entry = self._entries.get(key)
            if entry is not None:
                cooldown = self.cooldown_for(entry, severity, now)
                elapsed = now - entry.last_dispatch_at
                if elapsed < cooldown:
                    self.logger.info(
                        "alert_rate_limited",
                        user_id=user_id,
                        severity=severity.value,
                        remaining_seconds=ceil((cooldown - elapsed).total_seconds()),
                    )
                    return False

            self._stamp(key, now)
            return True

    async def record_dispatch(
        self, user_id: str, severity: SeverityLevel, at: datetime | None = None
    ) -> None:
        """Overwrite the key's last dispatch time with the actual hand-off time."""
        key = (user_id, severity)
        async with self._locks(key):
            self._stamp(key, at or self._clock())

    def _stamp(self, key: RateLimitKey, at: datetime) -> None:
        user_id, severity = key
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = RateLimitEntry(
                user_id=user_id, severity=severity, last_dispatch_at=at
            )
        else:
            self._entries[key] = entry.model_copy(update={"last_dispatch_at": at})

    async def record_user_response(
        self,
        user_id: str,
        severity: SeverityLevel,
        response: UserResponse,
        at: datetime | None = None,
    ) -> timedelta:
        """Remember the user's confirmation answer; returns the cooldown now in force."""
        at = at or self._clock()
        key = (user_id, severity)

        async with self._locks(key):
            entry = self._entries.get(key)
            if entry is None:
                # An answer with no prior alert starts the cooldown too
                entry = RateLimitEntry(user_id=user_id, severity=severity, last_dispatch_at=at)
            entry = entry.model_copy(
                update={"last_user_response": response, "last_user_response_at": at}
            )
            self._entries[key] = entry
            cooldown = self.cooldown_for(entry, severity, at)

        self.logger.info(
            "user_response_recorded",
            user_id=user_id,
            severity=severity.value,
            response=response.value,
            next_cooldown_seconds=cooldown.total_seconds(),
        )
        return cooldown

    def status(self, user_id: str, now: datetime | None = None) -> list[RateLimitStatus]:
        """Per-severity view of a user's cooldowns."""
        now = now or self._clock()
        statuses = []
        for severity in self.config.cooldowns:
            entry = self._entries.get((user_id, severity))
            cooldown = self.cooldown_for(entry, severity, now)
            remaining = 0.0
            if entry is not None:
                remaining = max(0.0, (cooldown - (now - entry.last_dispatch_at)).total_seconds())
            statuses.append(
                RateLimitStatus(
                    severity=severity,
                    rate_limited=remaining > 0,
                    remaining_seconds=ceil(remaining),
                    cooldown_seconds=cooldown.total_seconds(),
                    last_user_response=entry.last_user_response if entry else None,
                )
            )
        return statuses

    def entry(self, user_id: str, severity: SeverityLevel) -> RateLimitEntry | None:
        return self._entries.get((user_id, severity))

    def clear(self, user_id: str | None = None) -> int:
        """Drop rate-limit entries for one user, or for everyone."""
        keys = [k for k in self._entries if user_id is None or k[0] == user_id]
        for key in keys:
            del self._entries[key]
            self._locks.discard(key)
        self.logger.info("rate_limits_cleared", user_id=user_id, cleared=len(keys))
        return len(keys)
