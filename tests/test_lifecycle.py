"""Tests for the lifecycle manager, driving generated projects end to end."""

import asyncio
import json
import os
import sys
from unittest.mock import MagicMock, patch

import httpx
import pytest

from scaffoldkit.endpoints import HealthEndpointService, TcpHealthEndpointService
from scaffoldkit.environment import EnvironmentOverlay
from scaffoldkit.exceptions import InvalidStateTransitionError, ProbeTimeoutError, TeardownPartialFailureError
from scaffoldkit.launcher import RunSpec, get_process_registry
from scaffoldkit.lifecycle import LifecycleManager, remove_directory
from scaffoldkit.models import HttpEndpoint, InstanceState, TcpEndpoint, TeardownPolicy
from scaffoldkit.options import CommandArgument, ProjectOptions
from scaffoldkit.presets import SharedAccessKeyAuthentication

from conftest import WEB_API_TEMPLATE, WORKER_TEMPLATE, free_port

VARIABLE = "WORKER_GREETING"

SLEEPER = (sys.executable, "-u", "-c", "import time\ntime.sleep(60)")


def web_api(port: int):
    def run_spec(instance):
        return RunSpec(command=(sys.executable, "-u", "app.py"), arguments=(CommandArgument.open("port", port),))

    return run_spec


def worker(port: int, environment: EnvironmentOverlay | None = None, globally: bool = False) -> RunSpec:
    return RunSpec(
        command=(sys.executable, "-u", "worker.py"),
        arguments=(CommandArgument.open("health-port", port),),
        environment=environment or EnvironmentOverlay(),
        install_environment_globally=globally,
    )


@pytest.fixture(autouse=True)
def clean_variable(monkeypatch):
    monkeypatch.delenv(VARIABLE, raising=False)


class TestTeardown:
    def test_teardown_removes_directory_and_template(self, manager, tool_registry):
        instance = manager.create(WEB_API_TEMPLATE)
        assert json.loads(tool_registry.read_text())

        errors = manager.teardown(instance)

        assert errors == []
        assert not instance.project_dir.exists()
        assert json.loads(tool_registry.read_text()) == {}
        assert instance.state is InstanceState.TORN_DOWN
        assert manager.live_instances == []

    def test_teardown_is_idempotent(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        manager.teardown(instance)

        with patch("scaffoldkit.lifecycle.remove_directory") as remove:
            assert manager.teardown(instance) == []
        remove.assert_not_called()

    def test_keep_project_directory(self, manager, tool_registry):
        instance = manager.create(WEB_API_TEMPLATE, teardown_policy=TeardownPolicy.KEEP_PROJECT_DIRECTORY)
        manager.teardown(instance)

        assert (instance.project_dir / "app.py").is_file()
        assert json.loads(tool_registry.read_text()) == {}

    def test_keep_template_installed(self, manager, tool_registry):
        instance = manager.create(WEB_API_TEMPLATE, teardown_policy=TeardownPolicy.KEEP_TEMPLATE_INSTALLED)
        manager.teardown(instance)

        assert not instance.project_dir.exists()
        assert "fake-webapi" in json.loads(tool_registry.read_text())

    def test_teardown_stops_process(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        handle = manager.launch(instance, RunSpec(command=SLEEPER))

        manager.teardown(instance)

        assert not handle.is_alive
        assert not instance.project_dir.exists()

    def test_keep_project_running(self, manager):
        instance = manager.create(WEB_API_TEMPLATE, teardown_policy=TeardownPolicy.KEEP_PROJECT_RUNNING)
        handle = manager.launch(instance, RunSpec(command=SLEEPER))
        try:
            manager.teardown(instance)

            assert handle.is_alive
            assert instance.project_dir.exists()
            assert handle not in get_process_registry().live_handles()
        finally:
            handle.stop(grace_period=2)

    @pytest.mark.serial_environment
    def test_teardown_restores_global_environment(self, manager):
        instance = manager.create(WORKER_TEMPLATE)
        manager.launch(instance, worker(free_port(), EnvironmentOverlay({VARIABLE: "hello"}), globally=True))
        assert os.environ[VARIABLE] == "hello"

        manager.teardown(instance)

        assert VARIABLE not in os.environ
        assert instance.installed_environment.restored

    def test_failing_step_is_collected_and_remaining_steps_run(self, manager, tool_registry):
        instance = manager.create(WEB_API_TEMPLATE)
        broken = MagicMock(spec=["close"])
        broken.close.side_effect = RuntimeError("connection already gone")
        instance.add_resource(broken)

        with patch("scaffoldkit.lifecycle.remove_directory", side_effect=PermissionError("locked")):
            errors = manager.teardown(instance)

        assert [error.step for error in errors] == ["delete project directory", "close MagicMock"]
        assert all(isinstance(error, TeardownPartialFailureError) for error in errors)
        assert isinstance(errors[0].__cause__, PermissionError)
        assert json.loads(tool_registry.read_text()) == {}
        assert instance.teardown_errors == errors

    def test_resources_are_closed_in_reverse_order(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        closed = []
        for name in ("first", "second"):
            resource = MagicMock(spec=["close"])
            resource.close.side_effect = lambda name=name: closed.append(name)
            instance.add_resource(resource)

        manager.teardown(instance)
        assert closed == ["second", "first"]

    def test_resource_without_close_rejected(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        with pytest.raises(TypeError):
            instance.add_resource(object())

    def test_sweep_tears_down_forgotten_instances(self, manager):
        first = manager.create(WEB_API_TEMPLATE)
        second = manager.create(WEB_API_TEMPLATE)
        manager.teardown(first)

        assert manager.sweep() == 1
        assert not second.project_dir.exists()
        assert manager.sweep() == 0

    @pytest.mark.asyncio
    async def test_asweep_stops_and_removes_forgotten_instances(self, manager):
        first = manager.create(WEB_API_TEMPLATE)
        second = manager.create(WORKER_TEMPLATE)
        handle = manager.launch(second, RunSpec(command=SLEEPER))

        assert await manager.asweep() == 2

        assert not handle.is_alive
        assert not first.project_dir.exists()
        assert not second.project_dir.exists()
        assert manager.live_instances == []
        assert await manager.asweep() == 0

    @pytest.mark.asyncio
    async def test_blocking_teardown_from_coroutine_closes_async_clients(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "Healthy"}))
        service = instance.add_resource(HealthEndpointService("http://demo.local", transport=transport))
        await service.get("health")
        client = service.client

        errors = manager.teardown(instance)

        assert errors == []
        assert client.is_closed
        assert service._client is None
        assert instance.state is InstanceState.TORN_DOWN


class TestRemoveDirectory:
    def test_retries_until_files_are_released(self, tmp_path):
        target = tmp_path / "project"
        target.mkdir()
        calls = []

        def flaky_rmtree(path):
            calls.append(path)
            if len(calls) < 3:
                raise PermissionError("file in use")
            os.rmdir(path)

        with patch("shutil.rmtree", side_effect=flaky_rmtree):
            remove_directory(target, timeout=5, interval=0.01)

        assert len(calls) == 3
        assert not target.exists()

    def test_gives_up_after_timeout(self, tmp_path):
        with patch("shutil.rmtree", side_effect=PermissionError("file in use")):
            with pytest.raises(PermissionError):
                remove_directory(tmp_path, timeout=0.1, interval=0.02)

    def test_missing_directory_is_fine(self, tmp_path):
        remove_directory(tmp_path / "never-created")


class TestStateRules:
    @pytest.mark.asyncio
    async def test_await_ready_requires_launch(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        with pytest.raises(InvalidStateTransitionError):
            await manager.await_ready(instance, TcpEndpoint(free_port()), timeout=1, poll_interval=0.1)

    def test_patching_after_launch_rejected(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        manager.launch(instance, RunSpec(command=SLEEPER))

        with pytest.raises(InvalidStateTransitionError):
            manager.patcher(instance).add_file("late.txt", "too late")

    def test_package_added_before_launch(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        manager.add_package(instance, "Arcus.WebApi.Logging", "1.7.1")
        manager.launch(instance, RunSpec(command=SLEEPER))

        assert 'Include="Arcus.WebApi.Logging"' in (instance.project_dir / "Demo.Project.csproj").read_text()
        with pytest.raises(InvalidStateTransitionError):
            manager.add_package(instance, "Arcus.WebApi.Security", "1.7.1")

    def test_mark_in_use_requires_ready(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        with pytest.raises(InvalidStateTransitionError):
            manager.mark_in_use(instance)

    def test_stop_and_relaunch(self, manager):
        instance = manager.create(WEB_API_TEMPLATE)
        first = manager.launch(instance, RunSpec(command=SLEEPER))
        manager.stop(instance, grace_period=2)
        second = manager.launch(instance, RunSpec(command=SLEEPER))

        assert not first.is_alive
        assert second.is_alive
        assert instance.state is InstanceState.LAUNCHED


@pytest.mark.integration
class TestScopedProjects:
    @pytest.mark.asyncio
    async def test_shared_access_key_authentication(self, manager):
        port = free_port()
        options = ProjectOptions.empty().with_config(
            SharedAccessKeyAuthentication(
                header_name="x-shared-access-key",
                secret_name="api-key",
                secret_value="s3cr3t",
                target_file="app.py",
                secret_provider='{{"{secret_name}": "{secret_value}"}}',
            )
        )

        async with manager.project(
            WEB_API_TEMPLATE,
            options,
            run_spec=web_api(port),
            endpoint=HttpEndpoint(f"http://127.0.0.1:{port}/not-exist"),
        ) as instance:
            assert instance.state is InstanceState.IN_USE
            service = instance.add_resource(HealthEndpointService(f"http://127.0.0.1:{port}"))

            unauthorized = await service.get_health()
            authorized = await service.get_health(headers={"x-shared-access-key": "s3cr3t"})
            report = await service.probe_health(headers={"x-shared-access-key": "s3cr3t"})

        assert unauthorized.status_code == 401
        assert authorized.status_code == 200
        assert report.is_healthy
        assert instance.state is InstanceState.TORN_DOWN
        assert not instance.project_dir.exists()
        assert not instance.process.is_alive
        assert service._client is None

    @pytest.mark.asyncio
    async def test_project_without_authentication(self, manager):
        port = free_port()
        async with manager.project(
            WEB_API_TEMPLATE, run_spec=web_api(port), endpoint=HttpEndpoint(f"http://127.0.0.1:{port}/not-exist")
        ) as instance:
            async with HealthEndpointService(f"http://127.0.0.1:{port}") as service:
                response = await service.get_health()
        assert response.status_code == 200
        assert not instance.project_dir.exists()

    @pytest.mark.asyncio
    async def test_teardown_happens_when_the_test_fails(self, manager):
        port = free_port()
        with pytest.raises(AssertionError):
            async with manager.project(
                WEB_API_TEMPLATE,
                run_spec=web_api(port),
                endpoint=HttpEndpoint(f"http://127.0.0.1:{port}/not-exist"),
            ) as instance:
                raise AssertionError("test failed")

        assert not instance.process.is_alive
        assert not instance.project_dir.exists()
        assert manager.live_instances == []

    @pytest.mark.asyncio
    async def test_crashing_project_fails_readiness_fast(self, manager):
        crash = RunSpec(command=(sys.executable, "-u", "-c", "print('boom')\nraise SystemExit(2)"))

        with pytest.raises(ProbeTimeoutError) as exc_info:
            async with manager.project(
                WEB_API_TEMPLATE, run_spec=crash, endpoint=TcpEndpoint(free_port()), timeout=10
            ):
                pass

        assert "exited with code 2" in exc_info.value.last_failure
        assert manager.live_instances == []

    @pytest.mark.asyncio
    async def test_patches_are_applied_before_launch(self, manager):
        port = free_port()
        rename = lambda patcher: patcher.replace_text("app.py", {'"Demo.Project"': '"Patched.Project"'})  # noqa: E731

        async with manager.project(
            WEB_API_TEMPLATE,
            run_spec=web_api(port),
            endpoint=HttpEndpoint(f"http://127.0.0.1:{port}/not-exist"),
            patches=[rename],
        ) as instance:
            async with HealthEndpointService(f"http://127.0.0.1:{port}") as service:
                response = await service.get("")
        assert response.json() == {"project": "Patched.Project"}
        assert instance.is_torn_down

    @pytest.mark.asyncio
    async def test_worker_environment_stays_in_child(self, manager):
        port = free_port()
        overlay = EnvironmentOverlay({VARIABLE: "hello from the overlay"})

        async with manager.project(
            WORKER_TEMPLATE,
            run_spec=worker(port, overlay),
            endpoint=TcpEndpoint(port, read_payload=True),
        ):
            report = await TcpHealthEndpointService(port).probe_health()
            assert VARIABLE not in os.environ

        assert report.entries["environment"]["data"]["greeting"] == "hello from the overlay"

    @pytest.mark.asyncio
    async def test_parallel_projects_are_isolated(self, manager):
        # Installed once up front; parallel generation only reads the template registry
        manager.materializer.install_template(WORKER_TEMPLATE)

        async def run(greeting):
            port = free_port()
            async with manager.project(
                "fake-worker",
                run_spec=worker(port, EnvironmentOverlay({VARIABLE: greeting})),
                endpoint=TcpEndpoint(port, read_payload=True),
            ) as instance:
                report = await TcpHealthEndpointService(port).probe_health()
                return instance, report.entries["environment"]["data"]["greeting"]

        (first, first_greeting), (second, second_greeting) = await asyncio.gather(run("one"), run("two"))

        assert (first_greeting, second_greeting) == ("one", "two")
        assert first.project_dir != second.project_dir
        assert not first.project_dir.exists()
        assert not second.project_dir.exists()


def test_manager_builds_default_components(settings):
    manager = LifecycleManager(settings)
    assert manager.materializer.settings is settings
    assert manager.launcher.settings is settings
