"""
Pytest configuration and shared test utilities.

Tests drive the harness with a stand-in scaffolding tool
(``tests/fixtures/fake_tool.py``) and small Python projects as templates, so
no real scaffolding tool or runtime is needed.
"""

import dataclasses
import socket
import sys
from pathlib import Path

import pytest

from scaffoldkit.lifecycle import LifecycleManager
from scaffoldkit.utils.config import ConfigBuilder, HarnessSettings, reset_config

FIXTURES = Path(__file__).parent / "fixtures"
FAKE_TOOL = FIXTURES / "fake_tool.py"
TEMPLATES = FIXTURES / "templates"
WEB_API_TEMPLATE = TEMPLATES / "web-api"
WORKER_TEMPLATE = TEMPLATES / "worker"
SOURCES = FIXTURES / "sources"


def free_port() -> int:
    """Ask the OS for a currently unused local TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ===================================================================
# Settings and manager fixtures
# ===================================================================


@pytest.fixture(autouse=True)
def isolated_config():
    """Drop cached configuration around every test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def tool_registry(tmp_path, monkeypatch):
    """Registry file of the fake scaffolding tool, scoped to one test."""
    registry = tmp_path / "fake-tool-registry.json"
    monkeypatch.setenv("FAKE_TOOL_REGISTRY", str(registry))
    return registry


@pytest.fixture
def settings(tmp_path, tool_registry) -> HarnessSettings:
    """Default settings pointed at the fake tool and a private projects root."""
    defaults = HarnessSettings.from_config(ConfigBuilder())
    return dataclasses.replace(
        defaults,
        tool=(sys.executable, str(FAKE_TOOL)),
        project_name="Demo.Project",
        scaffolding_timeout=30,
        projects_root=tmp_path / "projects",
        fixture_directory=SOURCES,
        readiness_timeout=10,
        poll_interval=0.1,
        stop_timeout=5,
        output_buffer_lines=50,
    )


@pytest.fixture
def manager(settings):
    """Lifecycle manager that sweeps whatever a test leaves behind."""
    manager = LifecycleManager(settings)
    yield manager
    manager.sweep()


# Pytest markers
def pytest_configure(config):
    """Register scaffoldkit test markers."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow running (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests that launch generated projects as real processes"
    )
    config.addinivalue_line(
        "markers",
        "serial_environment: test installs process-wide environment variables and must not overlap"
    )
