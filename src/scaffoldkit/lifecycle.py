"""Lifecycle management of template project instances.

The :class:`LifecycleManager` drives an instance through its states::

    CREATED -> PATCHED -> LAUNCHED -> READY -> IN_USE -> TORN_DOWN

Patching is optional (``CREATED -> LAUNCHED``) and any state may move to
``TORN_DOWN``. Teardown runs a fixed sequence of best-effort steps:

1. stop the process (unless the policy keeps the project running)
2. restore process-wide environment variables, if they were installed
3. delete the project directory (unless the policy keeps it)
4. uninstall the template that was installed for the instance (unless kept)
5. close client resources registered on the instance

A failing step is wrapped in :class:`TeardownPartialFailureError`, logged and
collected on ``instance.teardown_errors``; the remaining steps still run and
nothing is raised, so a cleanup problem never hides the test's own failure.

Typical use from an async test::

    manager = LifecycleManager()
    async with manager.project(
        "webapi",
        options,
        run_spec=lambda instance: RunSpec.dotnet_project(instance, manager.settings),
        endpoint=HttpEndpoint("http://localhost:5000/not-exist"),
    ) as instance:
        ...
"""

import asyncio
import inspect
import shutil
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from scaffoldkit.exceptions import TeardownPartialFailureError
from scaffoldkit.instance import TemplateProjectInstance
from scaffoldkit.launcher import ContainerRunSpec, ProcessHandle, ProcessLauncher, RunSpec, get_process_registry
from scaffoldkit.materializer import ProjectMaterializer
from scaffoldkit.models import EndpointDescriptor, InstanceState, TeardownPolicy
from scaffoldkit.options import ProjectOptions, UpdateAction
from scaffoldkit.patcher import SourcePatcher
from scaffoldkit.probe import ReadinessProber
from scaffoldkit.utils.config import HarnessSettings
from scaffoldkit.utils.logger import get_logger

logger = get_logger("lifecycle")

DIRECTORY_REMOVAL_TIMEOUT = 10.0
DIRECTORY_REMOVAL_INTERVAL = 0.5

RunSpecFactory = Callable[[TemplateProjectInstance], RunSpec | ContainerRunSpec]


def remove_directory(
    path: Path,
    timeout: float = DIRECTORY_REMOVAL_TIMEOUT,
    interval: float = DIRECTORY_REMOVAL_INTERVAL,
) -> None:
    """Delete a directory tree, retrying while files are still held by a dying process."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError as e:
            if time.monotonic() >= deadline:
                raise
            logger.debug(f"Retrying removal of {path}: {e}")
            time.sleep(interval)


class LifecycleManager:
    """Creates, launches, probes and tears down template project instances.

    The manager remembers every instance it created until it is torn down, so
    :meth:`sweep` can clean up instances a test forgot about.
    """

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        materializer: ProjectMaterializer | None = None,
        launcher: ProcessLauncher | None = None,
        prober: ReadinessProber | None = None,
    ):
        self.settings = settings or HarnessSettings.from_config()
        self.materializer = materializer or ProjectMaterializer(self.settings)
        self.launcher = launcher or ProcessLauncher(self.settings)
        self.prober = prober or ReadinessProber()
        self._instances: list[TemplateProjectInstance] = []
        self._lock = threading.Lock()

    @property
    def live_instances(self) -> list[TemplateProjectInstance]:
        with self._lock:
            return [instance for instance in self._instances if not instance.is_torn_down]

    # =========================================================================
    # CREATE / PATCH / LAUNCH
    # =========================================================================

    def create(
        self,
        template_id: str | Path,
        options: ProjectOptions | None = None,
        teardown_policy: TeardownPolicy | None = None,
        destination_root: Path | None = None,
        project_name: str | None = None,
    ) -> TemplateProjectInstance:
        """Materialize a new instance and track it for teardown."""
        instance = self.materializer.materialize(
            template_id,
            options,
            destination_root=destination_root,
            teardown_policy=teardown_policy,
            project_name=project_name,
        )
        with self._lock:
            self._instances.append(instance)
        return instance

    def patcher(self, instance: TemplateProjectInstance) -> SourcePatcher:
        return SourcePatcher(instance, self.settings.fixture_directory)

    def add_package(self, instance: TemplateProjectInstance, name: str, version: str | None = None) -> None:
        self.materializer.add_package(instance, name, version)

    def launch(
        self, instance: TemplateProjectInstance, run_spec: RunSpec | ContainerRunSpec
    ) -> ProcessHandle:
        return self.launcher.launch(instance, run_spec)

    async def await_ready(
        self,
        instance: TemplateProjectInstance,
        endpoint: EndpointDescriptor,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> int:
        """Block until ``endpoint`` of the launched instance is ready.

        Raises:
            InvalidStateTransitionError: If the instance was not launched
            ProbeTimeoutError: If the endpoint is not ready in time, or the process exited
        """
        instance.require_transition(InstanceState.READY)
        attempts = await self.prober.await_ready(
            endpoint,
            timeout=self.settings.readiness_timeout if timeout is None else timeout,
            poll_interval=self.settings.poll_interval if poll_interval is None else poll_interval,
            process=instance.process,
        )
        instance.transition(InstanceState.READY)
        logger.success(f"Template project {instance.project_dir.name} is ready")
        return attempts

    def mark_in_use(self, instance: TemplateProjectInstance) -> None:
        instance.transition(InstanceState.IN_USE)

    def stop(self, instance: TemplateProjectInstance, grace_period: float | None = None) -> None:
        """Stop the instance's process so it can be patched or launched again."""
        if instance.process is not None:
            instance.process.stop(grace_period)
            logger.info(f"Stopped template project {instance.project_dir.name}")

    # =========================================================================
    # TEARDOWN
    # =========================================================================

    def _blocking_steps(self, instance: TemplateProjectInstance) -> list[tuple[str, Callable[[], Any]]]:
        policy = instance.teardown_policy
        steps: list[tuple[str, Callable[[], Any]]] = []

        process = instance.process
        if process is not None:
            if policy.keeps_running:
                logger.info(f"Keeping template project running (pid {process.pid})")
                get_process_registry().unregister(process)
            else:
                steps.append(("stop process", process.stop))

        installed = instance.installed_environment
        if installed is not None:
            steps.append(("restore environment", installed.restore))

        if policy.keeps_directory:
            logger.info(f"Keeping template project directory {instance.project_dir}")
        else:
            steps.append(("delete project directory", lambda: remove_directory(instance.project_dir)))

        if instance.template_directory is not None and not policy.keeps_template_installed:
            template_directory = instance.template_directory
            steps.append(
                ("uninstall template", lambda: self.materializer.uninstall_template(template_directory))
            )
        return steps

    def _run_step(self, instance: TemplateProjectInstance, step: str, action: Callable[[], Any]) -> None:
        try:
            action()
        except Exception as e:
            error = TeardownPartialFailureError(step, e)
            instance.teardown_errors.append(error)
            logger.error(f"{error.message} ({instance.project_dir.name})")

    def _forget(self, instance: TemplateProjectInstance) -> None:
        with self._lock:
            if instance in self._instances:
                self._instances.remove(instance)

    def teardown(self, instance: TemplateProjectInstance) -> list[TeardownPartialFailureError]:
        """Tear down an instance. Idempotent; failures are collected, not raised.

        Resources that only offer ``aclose()`` are closed on a private event
        loop; from async code use :meth:`ateardown`.
        """
        if not instance.begin_teardown():
            return []

        logger.info(f"Tearing down template project {instance.project_dir.name}")
        for step, action in self._blocking_steps(instance):
            self._run_step(instance, step, action)
        for resource in instance.pop_resources():
            self._run_step(instance, f"close {type(resource).__name__}", lambda r=resource: _close_sync(r))

        self._forget(instance)
        self._log_teardown_result(instance)
        return list(instance.teardown_errors)

    async def ateardown(self, instance: TemplateProjectInstance) -> list[TeardownPartialFailureError]:
        """Async :meth:`teardown`: blocking steps run in a worker thread."""
        if not instance.begin_teardown():
            return []

        logger.info(f"Tearing down template project {instance.project_dir.name}")

        def run_blocking_steps():
            for step, action in self._blocking_steps(instance):
                self._run_step(instance, step, action)

        await asyncio.to_thread(run_blocking_steps)
        for resource in instance.pop_resources():
            try:
                await _close_async(resource)
            except Exception as e:
                error = TeardownPartialFailureError(f"close {type(resource).__name__}", e)
                instance.teardown_errors.append(error)
                logger.error(error.message)

        self._forget(instance)
        self._log_teardown_result(instance)
        return list(instance.teardown_errors)

    def _log_teardown_result(self, instance: TemplateProjectInstance) -> None:
        if instance.teardown_errors:
            logger.warning(
                f"Teardown of {instance.project_dir.name} finished with "
                f"{len(instance.teardown_errors)} failed step(s)"
            )
        else:
            logger.debug(f"Teardown of {instance.project_dir.name} complete")

    def sweep(self) -> int:
        """Tear down every instance this manager created that is still alive."""
        leaked = self.live_instances
        if leaked:
            logger.warning(f"Sweeping {len(leaked)} template project(s) that were not torn down")
        for instance in leaked:
            self.teardown(instance)
        return len(leaked)

    async def asweep(self) -> int:
        leaked = self.live_instances
        if leaked:
            logger.warning(f"Sweeping {len(leaked)} template project(s) that were not torn down")
        for instance in leaked:
            await self.ateardown(instance)
        return len(leaked)

    # =========================================================================
    # SCOPED USE
    # =========================================================================

    @asynccontextmanager
    async def project(
        self,
        template_id: str | Path,
        options: ProjectOptions | None = None,
        *,
        run_spec: RunSpec | ContainerRunSpec | RunSpecFactory | None = None,
        endpoint: EndpointDescriptor | None = None,
        patches: Sequence[UpdateAction] = (),
        teardown_policy: TeardownPolicy | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ):
        """Create, patch, launch and await an instance; always tear it down on exit.

        Args:
            template_id: Template short name or template directory
            options: Generation options
            run_spec: How to launch the project, or a callable building it from the instance
            endpoint: Readiness endpoint awaited after launch
            patches: Extra patch actions applied before launch
            teardown_policy: Overrides the policy carried by ``options``
            timeout: Readiness timeout; defaults to ``readiness.timeout_seconds``
            poll_interval: Readiness poll interval; defaults to ``readiness.poll_interval_seconds``

        Yields:
            The instance, IN_USE when an endpoint was awaited
        """
        instance = await asyncio.to_thread(self.create, template_id, options, teardown_policy)
        try:
            if patches:
                patcher = self.patcher(instance)
                for patch in patches:
                    patch(patcher)

            if run_spec is not None:
                spec = run_spec if isinstance(run_spec, (RunSpec, ContainerRunSpec)) else run_spec(instance)
                await asyncio.to_thread(self.launch, instance, spec)
                if endpoint is not None:
                    await self.await_ready(instance, endpoint, timeout, poll_interval)
                    self.mark_in_use(instance)

            yield instance
        finally:
            await self.ateardown(instance)


def _close_sync(resource: Any) -> None:
    aclose = getattr(resource, "aclose", None)
    if aclose is None or not inspect.iscoroutinefunction(aclose):
        resource.close()
        return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(aclose())
        return
    # Called from a coroutine: the running loop cannot be re-entered, close on a private one
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="scaffoldkit-close") as executor:
        executor.submit(asyncio.run, aclose()).result()


async def _close_async(resource: Any) -> None:
    aclose = getattr(resource, "aclose", None)
    if aclose is not None:
        result = aclose()
        if inspect.isawaitable(result):
            await result
    else:
        resource.close()
