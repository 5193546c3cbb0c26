"""
Pytest configuration and shared fixtures.

Test doubles live in stubs.py; fixtures here wire them into registries and
managers with health monitoring disabled.
"""

import logging

import pytest
from stubs import FakeClock

from provider_hub.config.settings import ManagerConfig
from provider_hub.providers.manager import ProviderManager
from provider_hub.providers.registry import ProviderRegistry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def make_manager(registry, clock):
    """Factory for managers with health monitoring disabled by default."""

    def _make(**config):
        config.setdefault("health_check_interval", 0)
        return ProviderManager(registry, ManagerConfig(**config), clock=clock)

    return _make


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo setup_logging() changes to the root logger between tests."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
