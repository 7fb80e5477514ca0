"""Tests for the cached baseline lookup."""

import pytest

from anxiease.adapters.memory import InMemoryBaselineProvider
from anxiease.config import CacheConfig
from anxiease.domain.models import Baseline
from anxiease.errors import ConfigurationAbsent
from anxiease.services.baselines import BaselineStore


class FailingBaselineProvider:
    async def get(self, user_id: str, device_id: str) -> Baseline | None:
        raise ConnectionError("realtime store unreachable")


class TestBaselineStore:
    @pytest.mark.asyncio
    async def test_lookup_is_cached(self, baseline: Baseline) -> None:
        provider = InMemoryBaselineProvider([baseline])
        store = BaselineStore(provider, CacheConfig(baseline_ttl_seconds=60))

        first = await store.get("user-1", "band-01")
        second = await store.get("user-1", "band-01")

        assert first == second == baseline
        assert provider.lookups == 1

    @pytest.mark.asyncio
    async def test_missing_baseline_returns_none(self) -> None:
        store = BaselineStore(InMemoryBaselineProvider(), CacheConfig())
        assert await store.get("user-1", "band-01") is None

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, baseline: Baseline) -> None:
        provider = InMemoryBaselineProvider()
        store = BaselineStore(provider, CacheConfig(baseline_ttl_seconds=60))

        assert await store.get("user-1", "band-01") is None
        await provider.put(baseline)
        assert await store.get("user-1", "band-01") is None  # cached miss

        store.invalidate("user-1", "band-01")
        assert await store.get("user-1", "band-01") == baseline

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_caching(self, baseline: Baseline) -> None:
        provider = InMemoryBaselineProvider([baseline])
        store = BaselineStore(provider, CacheConfig(baseline_ttl_seconds=0))

        await store.get("user-1", "band-01")
        await store.get("user-1", "band-01")
        assert provider.lookups == 2

    @pytest.mark.asyncio
    async def test_provider_error_disables_detection(self) -> None:
        store = BaselineStore(FailingBaselineProvider(), CacheConfig())
        assert await store.get("user-1", "band-01") is None

    @pytest.mark.asyncio
    async def test_require_reports_missing_baseline_as_error(self) -> None:
        store = BaselineStore(InMemoryBaselineProvider(), CacheConfig())

        result = await store.require("user-1", "band-01")

        assert result.is_err()
        assert isinstance(result.unwrap_err(), ConfigurationAbsent)
        assert "user-1" in str(result.unwrap_err())

    @pytest.mark.asyncio
    async def test_require_returns_baseline(self, baseline: Baseline) -> None:
        store = BaselineStore(InMemoryBaselineProvider([baseline]), CacheConfig())

        result = await store.require("user-1", "band-01")

        assert result.is_ok()
        assert result.unwrap() == baseline
