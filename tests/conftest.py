"""
Pytest configuration and shared fixtures for the admission and detection layer.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set testing environment before importing application modules
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)

from caching.cache_store import MemoryCacheStore
from models.activity import ActivityRecord, ActivityStatus
from monitoring.metrics import MetricsCollector
from repositories.access_rule_repository import InMemoryAccessRuleRepository
from repositories.activity_log_repository import InMemoryActivityLogRepository
from services.access_list_service import AccessListService
from services.anomaly_detector import AnomalyDetector
from services.rate_limiter import RateLimitCounter, RateLimiter
from services.remediation_advisor import RemediationAdvisor

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def metrics():
    """Fresh registry per test so counters start at zero."""
    return MetricsCollector()


@pytest.fixture
def memory_store(fake_clock):
    return MemoryCacheStore(clock=fake_clock)


@pytest.fixture
def counter(memory_store, fake_clock, metrics):
    return RateLimitCounter(memory_store, clock=fake_clock, metrics=metrics)


@pytest.fixture
def rate_limiter(counter):
    return RateLimiter(counter)


@pytest.fixture
def rule_repository():
    return InMemoryAccessRuleRepository()


@pytest.fixture
def access_list(rule_repository, memory_store, metrics):
    return AccessListService(rule_repository, memory_store, cache_ttl=3600, metrics=metrics)


@pytest.fixture
def activity_repository():
    return InMemoryActivityLogRepository()


@pytest.fixture
def result_sink():
    return AsyncMock()


@pytest.fixture
def detector(activity_repository, result_sink, metrics):
    return AnomalyDetector(activity_repository, result_sink=result_sink, clock=lambda: NOW, metrics=metrics)


@pytest.fixture
def advisor(metrics):
    sink = MagicMock()
    sink.name = "mock"
    sink.send = AsyncMock(return_value=True)
    return RemediationAdvisor([sink], metrics=metrics)


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for cache store tests."""
    mock_redis = MagicMock()
    mock_redis.get = AsyncMock(return_value=None)
    mock_redis.set = AsyncMock(return_value=True)
    mock_redis.delete = AsyncMock(return_value=1)
    mock_redis.ping = AsyncMock(return_value=True)
    mock_redis.aclose = AsyncMock()
    mock_redis.register_script.return_value = AsyncMock(return_value=[1, 1, 1_700_000_060, 1_700_000_000])
    return mock_redis


def make_record(
    action_type: str,
    status: ActivityStatus = ActivityStatus.SUCCESS,
    user_id: Optional[int] = 1,
    ip: str = "8.8.8.8",
    minutes_ago: float = 5,
    at: Optional[datetime] = None,
) -> ActivityRecord:
    """Build an activity record relative to the fixed detector clock."""
    return ActivityRecord(
        actor_user_id=user_id,
        source_ip=ip,
        action_type=action_type,
        status=status,
        occurred_at=at or NOW - timedelta(minutes=minutes_ago),
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "security: mark test as security related")
    config.addinivalue_line("markers", "concurrency: mark test as exercising concurrent access")
