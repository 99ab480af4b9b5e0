"""
Shared pytest configuration and fixtures
"""
import pytest

from distrisim.config import get_settings


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: fast tests of a single module")
    config.addinivalue_line("markers", "slow: tests replaying every bundled scenario")


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached; tests that patch the environment need a fresh copy"""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
