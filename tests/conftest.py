"""Global test configuration: runs before any test module imports."""
import os

import pytest

# Must be set BEFORE any klyro imports; slowapi reads this at init
os.environ["RATELIMIT_ENABLED"] = "False"

from fakes import TEST_API_KEY  # noqa: E402


def pytest_configure(config):
    """Disable rate limiter after all imports."""
    from klyro.security import limiter
    limiter.enabled = False


@pytest.fixture
def memory_settings():
    from klyro.config import Settings

    return Settings(backend="memory", worker_concurrency=4, admin_api_key=TEST_API_KEY,
                    refresh_after=3600)


@pytest.fixture
def fake_redis():
    import fakeredis

    return fakeredis.FakeAsyncRedis(decode_responses=True)
