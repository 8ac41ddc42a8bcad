"""Shared fixtures for chatload tests."""

import os

import pytest

from chatload.metrics import MetricsAggregator
from tests.fakes import FakeClock, FakeConnection, FakeDirectory

os.environ.setdefault("API_BASE_URL", "http://backend.test")
os.environ.setdefault("WS_URL", "ws://backend.test/api/wsConnect")


@pytest.fixture
def metrics() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()
