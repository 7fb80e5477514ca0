"""Shared fixtures for the unit tests."""

import pytest

from anxiease.domain.models import Baseline
from anxiease.services.thresholds import HeartRateThresholds, derive_thresholds
from tests.unit.factories import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def baseline() -> Baseline:
    # Cut points: elevated 80, mild 85, moderate 95, severe 105, critical 115
    return Baseline(user_id="user-1", device_id="band-01", resting_heart_rate=70.0)


@pytest.fixture
def thresholds(baseline: Baseline) -> HeartRateThresholds:
    return derive_thresholds(baseline)
