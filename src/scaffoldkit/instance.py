"""A single materialized copy of a project template."""

import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from scaffoldkit.exceptions import InvalidStateTransitionError, TeardownPartialFailureError
from scaffoldkit.models import InstanceState, TeardownPolicy, can_transition
from scaffoldkit.options import ProjectOptions

if TYPE_CHECKING:
    from scaffoldkit.environment import InstalledOverlay
    from scaffoldkit.launcher import ProcessHandle


class TemplateProjectInstance:
    """One generated project: its directory, options, process and lifecycle state.

    Instances are created by the materializer and are owned by exactly one test.
    They are not meant to be shared between concurrently running tests.

    Attributes:
        template_id: Template short name or template directory it was generated from
        project_dir: Exclusive directory holding the generated project
        options: Options used for generation
        teardown_policy: Read at teardown time; may be changed until then
        template_directory: Template directory installed for this instance, if any
    """

    def __init__(
        self,
        template_id: str,
        project_dir: Path,
        options: ProjectOptions,
        project_name: str,
        template_directory: Path | None = None,
        teardown_policy: TeardownPolicy | None = None,
    ):
        self.template_id = template_id
        self.project_dir = project_dir
        self.options = options
        self.project_name = project_name
        self.template_directory = template_directory
        self.teardown_policy = (
            teardown_policy if teardown_policy is not None else options.teardown_policy
        )

        self.process: "ProcessHandle | None" = None
        self.installed_environment: "InstalledOverlay | None" = None
        self.teardown_errors: list[TeardownPartialFailureError] = []

        self._state = InstanceState.CREATED
        self._resources: list[Any] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def is_torn_down(self) -> bool:
        return self._state is InstanceState.TORN_DOWN

    def transition(self, requested: InstanceState) -> None:
        with self._lock:
            if not can_transition(self._state, requested):
                raise InvalidStateTransitionError(self._state, requested)
            self._state = requested

    def require_transition(self, requested: InstanceState) -> None:
        """Raise if ``requested`` is not reachable from the current state, without moving."""
        with self._lock:
            if not can_transition(self._state, requested):
                raise InvalidStateTransitionError(self._state, requested)

    def mark_patched(self) -> None:
        self.transition(InstanceState.PATCHED)

    def begin_teardown(self) -> bool:
        """Move to TORN_DOWN; returns False when teardown already happened."""
        with self._lock:
            if self._state is InstanceState.TORN_DOWN:
                return False
            self._state = InstanceState.TORN_DOWN
            return True

    @property
    def has_live_process(self) -> bool:
        return self.process is not None and self.process.is_alive

    def add_resource(self, resource: Any) -> Any:
        """Register a client resource closed at teardown (``close()`` or ``aclose()``)."""
        if not (hasattr(resource, "close") or hasattr(resource, "aclose")):
            raise TypeError(f"Resource {resource!r} has neither close() nor aclose()")
        with self._lock:
            self._resources.append(resource)
        return resource

    def pop_resources(self) -> list[Any]:
        with self._lock:
            resources, self._resources = self._resources, []
        # Close in reverse registration order
        return list(reversed(resources))

    def __repr__(self) -> str:
        return (
            f"TemplateProjectInstance(template={self.template_id!r}, dir={str(self.project_dir)!r}, "
            f"state={self._state.name})"
        )
