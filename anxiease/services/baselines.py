"""Read-through cache in front of the external baseline provider."""

import structlog

from anxiease.config import CacheConfig
from anxiease.domain.models import Baseline
from anxiease.errors import ConfigurationAbsent, Result
from anxiease.services.collaborators import BaselineProvider
from anxiease.services.concurrency import TTLCache

logger = structlog.get_logger(__name__)


class BaselineStore:
    """
    Holds the resting-heart-rate baseline for each (user, device) pair.

    Baselines are written by an external calibration process and only read
    here. A short TTL is fine: a late update just delays when the new
    thresholds take effect. Provider errors are reported as "no baseline",
    which disables detection for that user until the next lookup.
    """

    def __init__(self, provider: BaselineProvider, config: CacheConfig | None = None) -> None:
        self.provider = provider
        self.config = config or CacheConfig()
        self._cache: TTLCache[tuple[str, str], Baseline] = TTLCache(
            self.config.baseline_ttl_seconds
        )
        self.logger = logger.bind(component="baseline_store")

    async def get(self, user_id: str, device_id: str) -> Baseline | None:
        key = (user_id, device_id)
        hit, cached = self._cache.get(key)
        if hit:
            return cached

        try:
            baseline = await self.provider.get(user_id, device_id)
        except Exception as e:
            self.logger.error(
                "baseline_lookup_failed", user_id=user_id, device_id=device_id, error=str(e)
            )
            return None

        if baseline is None:
            self.logger.info("baseline_missing", user_id=user_id, device_id=device_id)

        self._cache.put(key, baseline)
        return baseline

    async def require(self, user_id: str, device_id: str) -> Result[Baseline, ConfigurationAbsent]:
        """Like ``get``, but a missing baseline is an explicit error value."""
        baseline = await self.get(user_id, device_id)
        if baseline is None:
            return Result.err(
                ConfigurationAbsent(f"no baseline for user {user_id} on device {device_id}")
            )
        return Result.ok(baseline)

    def invalidate(self, user_id: str | None = None, device_id: str | None = None) -> None:
        if user_id is None or device_id is None:
            self._cache.invalidate()
        else:
            self._cache.invalidate((user_id, device_id))
