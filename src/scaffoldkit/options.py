"""Project options passed to the scaffolding tool and the launched project.

:class:`ProjectOptions` is an immutable value: every ``with_*`` method returns
a new instance and leaves the original untouched, so one base set of options
can be shared safely across test cases and extended per scenario::

    base = ProjectOptions.empty().with_feature("include-appsettings")
    secured = base.with_config(SharedAccessKeyAuthentication("x-api-key", "key", "secret"))
    plain = base.with_option("--exclude-correlation")

Options carry three things:

- generation arguments passed to ``<tool> new``,
- run arguments (:class:`CommandArgument`) passed to the launched project,
- post-create update actions that patch the generated files so the project
  uses the option correctly (for example replacing placeholder values).
"""

import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

from scaffoldkit.models import TeardownPolicy

if TYPE_CHECKING:
    from scaffoldkit.patcher import SourcePatcher

UpdateAction = Callable[["SourcePatcher"], None]


class DuplicateOptionError(ValueError):
    """Raised when an identical generation argument is added twice."""


@dataclass(frozen=True)
class CommandArgument:
    """Argument passed to the launched project as ``--name value``.

    Secret arguments are passed in clear to the process but rendered masked
    when converted to a string, so they never end up in test logs.
    """

    name: str
    value: str
    secret: bool = False

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Name of CLI command argument cannot be blank")
        if self.value is None or not str(self.value).strip():
            raise ValueError(f"Value of CLI command argument '{self.name}' cannot be blank")
        object.__setattr__(self, "value", str(self.value))

    @classmethod
    def open(cls, name: str, value: object) -> "CommandArgument":
        return cls(name, value)

    @classmethod
    def create_secret(cls, name: str, value: object) -> "CommandArgument":
        return cls(name, value, secret=True)

    def to_args(self) -> list[str]:
        """Exposed form, as passed to the process."""
        return [f"--{self.name}", self.value]

    def __str__(self) -> str:
        return f"--{self.name} ***" if self.secret else f"--{self.name} {self.value}"


def _feature_argument(name: str, enabled: bool) -> str:
    return f"--{name}" if enabled else f"--{name} false"


class OptionConfig(Protocol):
    """Explicit configuration struct that knows how to extend a set of options."""

    def apply(self, options: "ProjectOptions") -> "ProjectOptions": ...


@dataclass(frozen=True)
class ProjectOptions:
    """Immutable set of generation arguments, feature toggles and run arguments."""

    arguments: tuple[str, ...] = ()
    features: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    run_arguments: tuple[CommandArgument, ...] = ()
    update_actions: tuple[UpdateAction, ...] = ()
    teardown_policy: TeardownPolicy = TeardownPolicy.DELETE_ALL

    @classmethod
    def empty(cls) -> "ProjectOptions":
        return cls()

    def _literal_arguments(self) -> set[str]:
        literals = set(self.arguments)
        literals.update(_feature_argument(name, enabled) for name, enabled in self.features.items())
        return literals

    def with_option(
        self,
        argument: str,
        *run_arguments: CommandArgument,
        update: UpdateAction | None = None,
    ) -> "ProjectOptions":
        """Add a generation argument such as ``"--authentication SharedAccessKey"``.

        Args:
            argument: Flag (with optional value) passed to ``<tool> new``
            *run_arguments: Arguments the launched project needs for this option
            update: Post-create action patching the project for this option

        Raises:
            DuplicateOptionError: If the identical argument is already present; the
                same flag with another value is left for the scaffolding tool to judge
        """
        if not argument or not argument.strip():
            raise ValueError("Requires a console argument to pass along to the scaffolding tool")

        argument = argument.strip()
        if argument in self._literal_arguments():
            raise DuplicateOptionError(f"Project option '{argument}' was already added")

        return replace(
            self,
            arguments=self.arguments + (argument,),
            run_arguments=self.run_arguments + run_arguments,
            update_actions=self.update_actions + ((update,) if update else ()),
        )

    def with_feature(self, name: str, enabled: bool = True) -> "ProjectOptions":
        """Set a boolean template parameter, rendered as ``--name`` or ``--name false``."""
        name = name.lstrip("-")
        if not name:
            raise ValueError("Feature toggle name cannot be blank")
        rendered = _feature_argument(name, enabled)
        if rendered in self.arguments:
            raise DuplicateOptionError(f"Project option '{rendered}' was already added as an argument")

        features = dict(self.features)
        features[name] = enabled
        return replace(self, features=MappingProxyType(features))

    def with_run_argument(self, argument: CommandArgument) -> "ProjectOptions":
        return replace(self, run_arguments=self.run_arguments + (argument,))

    def without_run_argument(self, name: str) -> "ProjectOptions":
        return replace(
            self, run_arguments=tuple(arg for arg in self.run_arguments if arg.name != name)
        )

    def with_update(self, update: UpdateAction) -> "ProjectOptions":
        """Add a post-create action without a generation argument."""
        return replace(self, update_actions=self.update_actions + (update,))

    def with_teardown_policy(self, policy: TeardownPolicy) -> "ProjectOptions":
        return replace(self, teardown_policy=policy)

    def with_config(self, config: OptionConfig) -> "ProjectOptions":
        return config.apply(self)

    def to_command_line_arguments(self) -> list[str]:
        """Flatten generation arguments and feature toggles into argv tokens."""
        tokens: list[str] = []
        for argument in self.arguments:
            tokens.extend(shlex.split(argument))
        for name, enabled in self.features.items():
            tokens.extend(_feature_argument(name, enabled).split())
        return tokens

    def apply_updates(self, patcher: "SourcePatcher") -> None:
        """Run the post-create actions in the order the options were added."""
        for update in self.update_actions:
            update(patcher)

    def __str__(self) -> str:
        return " ".join(self.to_command_line_arguments()) or "<no options>"
