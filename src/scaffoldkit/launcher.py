"""Launching generated projects as managed child processes.

The launcher starts a template project (directly, or as a container through
the Docker/Podman client), streams its output into the component logger and a
bounded in-memory tail, and hands back a :class:`ProcessHandle` that the
lifecycle manager stops at teardown.

Every handle is also tracked by a process-wide registry: if the interpreter
exits while a handle is still alive (for example after an unexpected test
crash), the registry kills it so no orphan process outlives the test run.
"""

import atexit
import os
import signal
import subprocess
import threading
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from scaffoldkit.environment import EnvironmentOverlay
from scaffoldkit.exceptions import ProcessAlreadyRunningError, ProcessLaunchError
from scaffoldkit.instance import TemplateProjectInstance
from scaffoldkit.models import InstanceState
from scaffoldkit.options import CommandArgument
from scaffoldkit.runtime_helper import get_container_runtime
from scaffoldkit.utils.config import HarnessSettings
from scaffoldkit.utils.logger import get_logger

logger = get_logger("launcher")
process_logger = get_logger("process")

IS_POSIX = os.name == "posix"


@dataclass(frozen=True)
class RunSpec:
    """How to run a generated project.

    :param command: Executable and arguments
    :param cwd: Working directory; defaults to the project directory
    :param environment: Variables set in the child environment
    :param arguments: Extra ``--name value`` arguments appended to the command
    :param build_command: Command run to completion before launching (e.g. a build)
    :param build_timeout: Seconds the build may take
    :param stop_timeout: Grace period before the process is killed on stop
    :param stop_command: Command run before terminating, e.g. removing a container
    :param install_environment_globally: Also set the overlay in ``os.environ``
        until teardown, for process models that read the parent's environment
    """

    command: tuple[str, ...]
    cwd: Path | None = None
    environment: EnvironmentOverlay = field(default_factory=EnvironmentOverlay)
    arguments: tuple[CommandArgument, ...] = ()
    build_command: tuple[str, ...] | None = None
    build_timeout: float = 600
    stop_timeout: float | None = None
    stop_command: tuple[str, ...] | None = None
    install_environment_globally: bool = False

    @classmethod
    def dotnet_project(
        cls,
        instance: TemplateProjectInstance,
        settings: HarnessSettings,
        *arguments: CommandArgument,
        environment: EnvironmentOverlay | None = None,
    ) -> "RunSpec":
        """Build the project in release mode, then execute the compiled assembly."""
        project_dir = instance.project_dir
        assembly = (
            project_dir
            / "bin"
            / settings.build_configuration
            / settings.target_framework
            / f"{instance.project_name}.dll"
        )
        return cls(
            command=("dotnet", "exec", str(assembly)),
            arguments=arguments,
            environment=environment or EnvironmentOverlay(),
            build_command=("dotnet", "build", "-c", settings.build_configuration, str(project_dir)),
        )

    @classmethod
    def functions_host(
        cls,
        instance: TemplateProjectInstance,
        environment: EnvironmentOverlay | None = None,
        port: int | None = None,
    ) -> "RunSpec":
        """Build the project, then run it under the local functions host."""
        command = ("func", "start") + (("--port", str(port)) if port else ())
        return cls(
            command=command,
            environment=environment or EnvironmentOverlay(),
            build_command=("dotnet", "build", str(instance.project_dir)),
        )


@dataclass(frozen=True)
class ContainerRunSpec:
    """Run a project image in a container, attached so its output is captured."""

    image: str
    name: str
    ports: dict[int, int] = field(default_factory=dict)
    environment: EnvironmentOverlay = field(default_factory=EnvironmentOverlay)
    arguments: tuple[str, ...] = ()
    build_context: Path | None = None
    runtime: str | None = None
    stop_timeout: float | None = None

    def to_run_spec(self, runtime: str | None = None) -> RunSpec:
        runtime = runtime or self.runtime or get_container_runtime()
        command: list[str] = [runtime, "run", "--rm", "--name", self.name]
        for host_port, container_port in self.ports.items():
            command.extend(["-p", f"{host_port}:{container_port}"])
        for name, value in self.environment.items():
            if value is not None:
                command.extend(["-e", f"{name}={value}"])
        command.append(self.image)
        command.extend(self.arguments)

        build_command = None
        if self.build_context is not None:
            build_command = (runtime, "build", "-t", self.image, str(self.build_context))

        return RunSpec(
            command=tuple(command),
            build_command=build_command,
            stop_timeout=self.stop_timeout,
            stop_command=(runtime, "rm", "-f", self.name),
        )


def display_command(command: Sequence[str], arguments: Sequence[CommandArgument] = ()) -> str:
    """Render a command line for logs with container env values and secrets masked."""
    parts: list[str] = []
    mask_next = False
    for part in command:
        if mask_next and "=" in part:
            part = part.split("=", 1)[0] + "=***"
        mask_next = part == "-e"
        parts.append(part)
    parts.extend(str(argument) for argument in arguments)
    return " ".join(parts)


class ProcessHandle:
    """Live child process of a template project.

    Output of both streams is logged line by line and the most recent lines
    are kept in a bounded buffer for diagnostics.
    """

    def __init__(
        self,
        popen: subprocess.Popen,
        command_line: str,
        output_lines: int = 500,
        stop_timeout: float = 10,
        stop_command: Sequence[str] | None = None,
    ):
        self._popen = popen
        self.command_line = command_line
        self.stop_timeout = stop_timeout
        self._stop_command = list(stop_command) if stop_command else None
        self._output: deque[str] = deque(maxlen=output_lines)
        self._output_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._pumps = [
            self._start_pump(stream, label)
            for stream, label in ((popen.stdout, "stdout"), (popen.stderr, "stderr"))
            if stream is not None
        ]

    def _start_pump(self, stream: IO[str], label: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._pump, args=(stream, label), name=f"output-{self.pid}-{label}", daemon=True
        )
        thread.start()
        return thread

    def _pump(self, stream: IO[str], label: str) -> None:
        for line in iter(stream.readline, ""):
            line = line.rstrip("\r\n")
            with self._output_lock:
                self._output.append(f"[{label}] {line}")
            process_logger.debug(f"[{self.pid}] {line}")
        stream.close()

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def is_alive(self) -> bool:
        return self._popen.poll() is None

    @property
    def returncode(self) -> int | None:
        return self._popen.poll()

    def output_tail(self, lines: int | None = None) -> list[str]:
        with self._output_lock:
            tail = list(self._output)
        return tail if lines is None else tail[-lines:]

    def wait(self, timeout: float | None = None) -> int:
        return self._popen.wait(timeout=timeout)

    def stop(self, grace_period: float | None = None) -> None:
        """Terminate the process (and its process group), killing it after the grace period.

        Idempotent: stopping an already stopped handle does nothing.
        """
        grace_period = self.stop_timeout if grace_period is None else grace_period
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

            if self._stop_command:
                try:
                    subprocess.run(self._stop_command, capture_output=True, timeout=grace_period)
                except (OSError, subprocess.TimeoutExpired) as e:
                    logger.warning(f"Stop command {' '.join(self._stop_command)} failed: {e}")

            if self.is_alive:
                self._signal(signal.SIGTERM)
                try:
                    self._popen.wait(timeout=grace_period)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        f"Process {self.pid} did not exit within {grace_period:g}s, killing it"
                    )
                    self._signal(signal.SIGKILL if IS_POSIX else signal.SIGTERM, force=True)
                    self._popen.wait(timeout=grace_period)

            for pump in self._pumps:
                pump.join(timeout=1)
            _registry.unregister(self)
            logger.debug(f"Process {self.pid} stopped with exit code {self._popen.returncode}")

    def _signal(self, signum: int, force: bool = False) -> None:
        try:
            if IS_POSIX:
                # Launched with start_new_session, so the pid is also the process group id
                os.killpg(self._popen.pid, signum)
            elif force:
                self._popen.kill()
            else:
                self._popen.terminate()
        except ProcessLookupError:
            pass

    def __repr__(self) -> str:
        state = "alive" if self.is_alive else f"exited({self.returncode})"
        return f"ProcessHandle(pid={self.pid}, {state})"


class ProcessRegistry:
    """Tracks live handles so they can be force-killed at interpreter exit."""

    def __init__(self):
        self._handles: set[ProcessHandle] = set()
        self._lock = threading.Lock()

    def register(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.add(handle)

    def unregister(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles.discard(handle)

    def live_handles(self) -> list[ProcessHandle]:
        with self._lock:
            return [handle for handle in self._handles if handle.is_alive]

    def kill_all(self) -> None:
        for handle in self.live_handles():
            logger.warning(f"Killing leaked process {handle.pid}: {handle.command_line}")
            handle.stop(grace_period=2)


_registry = ProcessRegistry()
atexit.register(_registry.kill_all)


def get_process_registry() -> ProcessRegistry:
    return _registry


class ProcessLauncher:
    """Starts template projects and guarantees at most one live process per instance."""

    def __init__(self, settings: HarnessSettings | None = None):
        self.settings = settings or HarnessSettings.from_config()

    def launch(self, instance: TemplateProjectInstance, run_spec: RunSpec | ContainerRunSpec) -> ProcessHandle:
        """Start the project described by ``run_spec``.

        Raises:
            ProcessAlreadyRunningError: If the instance already has a live process
            ProcessLaunchError: If the build fails or the command cannot be spawned
            InvalidStateTransitionError: If the instance cannot be launched in its current state
        """
        if isinstance(run_spec, ContainerRunSpec):
            try:
                runtime = run_spec.runtime or get_container_runtime(self.settings.container_runtime)
            except RuntimeError as e:
                raise ProcessLaunchError(
                    f"Cannot run container image '{run_spec.image}': {e}",
                    technical_details={"image": run_spec.image, "error": str(e)},
                ) from e
            run_spec = run_spec.to_run_spec(runtime)

        if instance.has_live_process:
            raise ProcessAlreadyRunningError(instance.project_dir, instance.process.pid)
        instance.require_transition(InstanceState.LAUNCHED)

        cwd = run_spec.cwd or instance.project_dir
        arguments = instance.options.run_arguments + run_spec.arguments
        command = list(run_spec.command)
        for argument in arguments:
            command.extend(argument.to_args())

        env = run_spec.environment.child_environment()

        if run_spec.build_command:
            self._build(run_spec, cwd, env)

        # The previous process is gone, so is its process-wide overlay
        if instance.installed_environment is not None:
            instance.installed_environment.restore()
            instance.installed_environment = None
        if run_spec.install_environment_globally:
            instance.installed_environment = run_spec.environment.install()

        command_line = display_command(run_spec.command, arguments)
        logger.info(f"> {command_line}")

        try:
            popen = subprocess.Popen(
                command,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=IS_POSIX,
            )
        except OSError as e:
            if instance.installed_environment is not None:
                instance.installed_environment.restore()
                instance.installed_environment = None
            raise ProcessLaunchError(
                f"Could not start template project with '{command_line}' in {cwd}: {e}",
                command=list(run_spec.command),
                technical_details={"cwd": str(cwd), "error": repr(e)},
            ) from e

        handle = ProcessHandle(
            popen,
            command_line,
            output_lines=self.settings.output_buffer_lines,
            stop_timeout=run_spec.stop_timeout or self.settings.stop_timeout,
            stop_command=run_spec.stop_command,
        )
        _registry.register(handle)
        instance.process = handle
        instance.transition(InstanceState.LAUNCHED)
        logger.key_info(f"Started template project {instance.project_dir.name} (pid {handle.pid})")
        return handle

    def _build(self, run_spec: RunSpec, cwd: Path, env: dict[str, str]) -> None:
        build_line = " ".join(run_spec.build_command)
        logger.info(f"> {build_line}")
        try:
            result = subprocess.run(
                list(run_spec.build_command),
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=run_spec.build_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProcessLaunchError(
                f"Could not build template project with '{build_line}': {e}",
                command=list(run_spec.build_command),
            ) from e

        if result.returncode != 0:
            output = (result.stdout + result.stderr).strip().splitlines()
            raise ProcessLaunchError(
                f"Build of template project failed with exit code {result.returncode}, "
                "please check for compile errors in the generated project",
                command=list(run_spec.build_command),
                technical_details={"returncode": result.returncode, "output_tail": output[-50:]},
            )
