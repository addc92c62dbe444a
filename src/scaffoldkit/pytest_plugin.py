"""pytest plugin providing template project fixtures.

Registered through the ``pytest11`` entry point, so installing scaffoldkit is
enough to use the fixtures::

    @pytest.mark.asyncio
    async def test_health(lifecycle_manager):
        async with lifecycle_manager.project("webapi", run_spec=..., endpoint=...) as instance:
            ...

Tests that install environment variables process-wide
(``RunSpec.install_environment_globally``) should be marked
``serial_environment``; they then hold a shared lock for their whole run so
they never overlap with each other inside one test process.
"""

import threading

import pytest

from scaffoldkit.lifecycle import LifecycleManager
from scaffoldkit.utils.config import HarnessSettings

_ENVIRONMENT_LOCK = threading.Lock()


def pytest_configure(config):
    """Register scaffoldkit pytest markers."""
    config.addinivalue_line(
        "markers",
        "serial_environment: test installs process-wide environment variables and must not overlap",
    )


@pytest.fixture(scope="session")
def harness_settings() -> HarnessSettings:
    """Harness settings loaded from ``scaffoldkit.yml`` (or defaults)."""
    return HarnessSettings.from_config()


@pytest.fixture(scope="session")
def lifecycle_manager(harness_settings):
    """Session-wide lifecycle manager; instances a test forgot are swept at session end."""
    manager = LifecycleManager(harness_settings)
    yield manager
    manager.sweep()


@pytest.fixture
def environment_lock():
    """Hold the process-wide environment lock for the duration of the test."""
    with _ENVIRONMENT_LOCK:
        yield _ENVIRONMENT_LOCK


@pytest.fixture(autouse=True)
def _serial_environment(request):
    if request.node.get_closest_marker("serial_environment") is None:
        yield
        return
    request.getfixturevalue("environment_lock")
    yield
