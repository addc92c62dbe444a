"""Exception Hierarchy for the Template-Project Harness.

Every failure mode of the harness maps onto one exception class, grouped by the
lifecycle phase in which it happens. The phase determines how the failure is
handled:

**Creation, patching and launch errors** are fatal to the instance and propagate
to the caller immediately. A broken generation is a test-authoring or
environment bug, never a transient condition, so nothing is retried.

**Readiness errors** propagate as :class:`ProbeTimeoutError`, carrying the last
observed failure so the test output explains why the project never came up.

**Teardown errors** are recovered locally: they are wrapped in
:class:`TeardownPartialFailureError`, logged and collected on the instance, but
never raised, so a cleanup failure cannot mask the original test failure.

.. note::
   All exceptions inherit from :class:`ScaffoldKitError`, which carries the
   error category and a ``technical_details`` dict for diagnostics.

Examples:
    Handling a broken generation::

        >>> try:
        ...     instance = manager.create("webapi", options)
        ... except ProjectCreationError as e:
        ...     print(e.stderr)
"""

from enum import Enum
from pathlib import Path
from typing import Any


class ErrorCategory(Enum):
    """Lifecycle phase in which an error occurred."""

    CREATION = "creation"
    PATCHING = "patching"
    LAUNCH = "launch"
    READINESS = "readiness"
    TEARDOWN = "teardown"
    STATE = "state"


class ScaffoldKitError(Exception):
    """Base exception class for all harness operations.

    :param message: Human-readable error description
    :type message: str
    :param category: Lifecycle phase of the failure
    :type category: ErrorCategory
    :param technical_details: Additional technical information for debugging
    :type technical_details: dict[str, Any], optional
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        technical_details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.technical_details = technical_details or {}

    def is_fatal_to_instance(self) -> bool:
        """Whether the owning instance cannot continue after this error."""
        return self.category in (
            ErrorCategory.CREATION,
            ErrorCategory.PATCHING,
            ErrorCategory.LAUNCH,
            ErrorCategory.READINESS,
        )


# =============================================================================
# CREATION ERRORS
# =============================================================================


class ProjectCreationError(ScaffoldKitError):
    """Raised when the scaffolding tool fails to generate a project.

    The captured output of the tool is kept verbatim: option combinations are
    not pre-validated, so the tool's own stderr is the diagnostic.
    """

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(
            message,
            ErrorCategory.CREATION,
            {"command": command, "returncode": returncode},
        )
        self.command = command or []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}\n--- stderr ---\n{self.stderr.rstrip()}"
        return self.message


class TemplateNotFoundError(ProjectCreationError):
    """Raised when a template directory lacks a usable ``template.json``."""


# =============================================================================
# PATCHING ERRORS
# =============================================================================


class FileNotFoundInProjectError(ScaffoldKitError):
    """Raised when a patch targets a file that does not exist in the project."""

    def __init__(self, relative_path: str | Path, project_dir: Path):
        super().__init__(
            f"No project file '{relative_path}' was found in the project directory {project_dir}, "
            "please make sure the template includes this file or that the test adds it first",
            ErrorCategory.PATCHING,
            {"relative_path": str(relative_path), "project_dir": str(project_dir)},
        )
        self.relative_path = Path(relative_path)
        self.project_dir = project_dir


class FixtureAmbiguityError(ScaffoldKitError):
    """Raised when more than one fixture file matches a requested name."""

    def __init__(self, fixture_name: str, matches: list[Path]):
        super().__init__(
            f"More than a single fixture matches the file name '{fixture_name}': "
            + ", ".join(str(m) for m in matches),
            ErrorCategory.PATCHING,
            {"fixture_name": fixture_name, "matches": [str(m) for m in matches]},
        )
        self.fixture_name = fixture_name
        self.matches = matches


# =============================================================================
# LAUNCH ERRORS
# =============================================================================


class ProcessLaunchError(ScaffoldKitError):
    """Raised when the project process cannot be spawned (or its build fails)."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        technical_details: dict[str, Any] | None = None,
    ):
        details = {"command": command}
        details.update(technical_details or {})
        super().__init__(message, ErrorCategory.LAUNCH, details)
        self.command = command or []


class ProcessAlreadyRunningError(ScaffoldKitError):
    """Raised when launching an instance that already has a live process."""

    def __init__(self, project_dir: Path, pid: int | None):
        super().__init__(
            f"Project at {project_dir} is already running (pid {pid}); stop it before launching again",
            ErrorCategory.LAUNCH,
            {"project_dir": str(project_dir), "pid": pid},
        )
        self.project_dir = project_dir
        self.pid = pid


# =============================================================================
# READINESS ERRORS
# =============================================================================


class ProbeTimeoutError(ScaffoldKitError):
    """Raised when an endpoint does not become ready within the timeout.

    :param endpoint: Description of the probed endpoint
    :param timeout: Timeout in seconds that elapsed
    :param attempts: Number of probe attempts made
    :param last_failure: Last observed response or exception, for diagnostics
    """

    def __init__(self, endpoint: str, timeout: float, attempts: int, last_failure: str | None):
        message = (
            f"Endpoint {endpoint} did not become ready within {timeout:g}s after {attempts} attempt(s)"
        )
        if last_failure:
            message += f"; last failure: {last_failure}"
        super().__init__(
            message,
            ErrorCategory.READINESS,
            {"endpoint": endpoint, "timeout": timeout, "attempts": attempts, "last_failure": last_failure},
        )
        self.endpoint = endpoint
        self.timeout = timeout
        self.attempts = attempts
        self.last_failure = last_failure


# =============================================================================
# TEARDOWN AND STATE ERRORS
# =============================================================================


class TeardownPartialFailureError(ScaffoldKitError):
    """A single best-effort teardown step failed. Logged and collected, never raised."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(
            f"Teardown step '{step}' failed: {cause}",
            ErrorCategory.TEARDOWN,
            {"step": step, "cause": repr(cause)},
        )
        self.step = step
        self.__cause__ = cause


class InvalidStateTransitionError(ScaffoldKitError):
    """Raised when a lifecycle operation is called in the wrong instance state."""

    def __init__(self, current: Any, requested: Any):
        super().__init__(
            f"Cannot move template project from state {current.name} to {requested.name}",
            ErrorCategory.STATE,
            {"current": current.name, "requested": requested.name},
        )
        self.current = current
        self.requested = requested
