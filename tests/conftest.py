"""
Global pytest fixtures for the CostLens test suite.

Provides:
- Settings isolated from the process environment and .env
- Recording sleep for retry tests
- In-memory cache manager
"""

import pytest

from costlens.schemas.costs import CostQueryParams
from costlens.shared.core.cache import CostCacheManager, MemoryCache
from costlens.shared.core.config import Settings
from costlens.shared.core.retry import RetryPolicy
from tests.utils import PERIOD_END, PERIOD_START, RecordingSleep


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry(recording_sleep: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=1.0, factor=2.0, max_delay=30.0, sleep=recording_sleep)


@pytest.fixture
def memory_cache_manager() -> CostCacheManager:
    return CostCacheManager(MemoryCache())


@pytest.fixture
def query_params() -> CostQueryParams:
    return CostQueryParams(start_date=PERIOD_START, end_date=PERIOD_END)
