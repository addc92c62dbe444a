"""Project materialization through the external scaffolding tool.

The materializer turns a template (a short name known to the tool, or a
template directory containing ``.template.config/template.json``) into a
generated project in a fresh directory that nothing else uses::

    <projects root>/<project name>-<uuid4 hex>/

Generation shells out to ``<tool> new <short name> [options] -n <name> -o <dir>``
and waits for it with a timeout. Package references are added the same way,
with ``<tool> add <project file> package <name> -v <version>``. The tool is
configurable (``scaffolding.tool``) so test suites can substitute any
executable with the same command line contract.
"""

import json
import shutil
import subprocess
import uuid
from pathlib import Path

from scaffoldkit.exceptions import FileNotFoundInProjectError, ProjectCreationError, TemplateNotFoundError
from scaffoldkit.instance import TemplateProjectInstance
from scaffoldkit.models import InstanceState, TeardownPolicy
from scaffoldkit.options import ProjectOptions
from scaffoldkit.patcher import SourcePatcher
from scaffoldkit.utils.config import HarnessSettings
from scaffoldkit.utils.logger import get_logger

logger = get_logger("materializer")

TEMPLATE_CONFIG = Path(".template.config") / "template.json"


def read_short_name(template_directory: Path) -> str:
    """Read the template short name from ``.template.config/template.json``.

    Raises:
        TemplateNotFoundError: If the file is missing or has no usable ``shortName``
    """
    config_path = Path(template_directory) / TEMPLATE_CONFIG
    if not config_path.is_file():
        raise TemplateNotFoundError(
            f"Cannot find template configuration at {config_path}, "
            "please make sure the template directory contains a .template.config/template.json file"
        )

    try:
        with open(config_path, encoding="utf-8-sig") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise TemplateNotFoundError(f"Cannot read template configuration at {config_path}: {e}") from e

    short_name = config.get("shortName") if isinstance(config, dict) else None
    if isinstance(short_name, list):
        short_name = short_name[0] if short_name else None
    if not isinstance(short_name, str) or not short_name.strip():
        raise TemplateNotFoundError(f"Template configuration at {config_path} has no 'shortName'")
    return short_name.strip()


def find_project_file(instance: TemplateProjectInstance) -> Path:
    """Locate the project file package references are added to."""
    preferred = instance.project_dir / f"{instance.project_name}.csproj"
    if preferred.is_file():
        return preferred
    candidates = sorted(path for path in instance.project_dir.glob("*.*proj") if path.is_file())
    if len(candidates) != 1:
        raise FileNotFoundInProjectError(preferred.name, instance.project_dir)
    return candidates[0]


class ProjectMaterializer:
    """Generates template projects into isolated directories."""

    def __init__(self, settings: HarnessSettings | None = None):
        self.settings = settings or HarnessSettings.from_config()

    def _run_tool(self, arguments: list[str], action: str) -> subprocess.CompletedProcess:
        command = [*self.settings.tool, *arguments]
        command_line = " ".join(command)
        logger.info(f"> {command_line}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.settings.scaffolding_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProjectCreationError(
                f"Scaffolding tool did not {action} within {self.settings.scaffolding_timeout:g}s",
                command=command,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=e.stderr if isinstance(e.stderr, str) else "",
            ) from e
        except OSError as e:
            raise ProjectCreationError(
                f"Cannot run scaffolding tool '{command[0]}' to {action}: {e}", command=command
            ) from e

        if result.returncode != 0:
            raise ProjectCreationError(
                f"Scaffolding tool failed to {action} (exit code {result.returncode})",
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def install_template(self, template_directory: Path) -> None:
        logger.info(f"Installing project template from {template_directory}")
        self._run_tool(["new", "install", str(template_directory), "--force"], "install the template")

    def uninstall_template(self, template_directory: Path) -> None:
        logger.info(f"Uninstalling project template from {template_directory}")
        self._run_tool(["new", "uninstall", str(template_directory)], "uninstall the template")

    def add_package(self, instance: TemplateProjectInstance, name: str, version: str | None = None) -> None:
        """Add a package reference to the generated project.

        Runs ``<tool> add <project file> package <name> [-v <version>]``. The
        project file is ``<project name>.csproj``, or the only project file in
        the directory.

        Raises:
            FileNotFoundInProjectError: If no single project file is found
            ProjectCreationError: If the tool fails
        """
        if not name or not name.strip():
            raise ValueError("Package name cannot be blank")
        instance.require_transition(InstanceState.PATCHED)

        arguments = ["add", str(find_project_file(instance)), "package", name.strip()]
        if version:
            arguments.extend(["-v", version])
        self._run_tool(arguments, f"add package '{name}'")
        instance.mark_patched()
        logger.info(f"Added package {name} {version or '(latest)'} to {instance.project_dir.name}")

    def _discard_template(self, template_directory: Path | None, policy: TeardownPolicy) -> None:
        if template_directory is None or policy.keeps_template_installed:
            return
        try:
            self.uninstall_template(template_directory)
        except ProjectCreationError as e:
            logger.warning(f"Could not uninstall template after failed generation: {e.message}")

    def materialize(
        self,
        template_id: str | Path,
        options: ProjectOptions | None = None,
        destination_root: Path | None = None,
        teardown_policy: TeardownPolicy | None = None,
        project_name: str | None = None,
    ) -> TemplateProjectInstance:
        """Generate a project from ``template_id`` into a new unique directory.

        Args:
            template_id: Template short name, or path to a template directory
            options: Generation options and post-create update actions
            destination_root: Parent of the project directory; defaults to ``projects.root``
            teardown_policy: Overrides the policy carried by ``options``
            project_name: Overrides ``scaffolding.project_name``

        Returns:
            The instance in state CREATED, or PATCHED when update actions ran

        Raises:
            TemplateNotFoundError: If a template directory has no usable template.json
            ProjectCreationError: If the directory already exists or the tool fails
        """
        options = options or ProjectOptions.empty()
        project_name = project_name or self.settings.project_name
        root = Path(destination_root or self.settings.projects_root)

        template_directory: Path | None = None
        template_path = Path(template_id)
        if template_path.is_dir():
            template_directory = template_path.resolve()
            short_name = read_short_name(template_directory)
            self.install_template(template_directory)
        else:
            short_name = str(template_id)

        project_dir = root / f"{project_name}-{uuid.uuid4().hex}"
        if project_dir.exists():
            raise ProjectCreationError(
                f"Project directory {project_dir} already exists, refusing to generate into it"
            )
        root.mkdir(parents=True, exist_ok=True)

        arguments = [
            "new",
            short_name,
            *options.to_command_line_arguments(),
            "-n",
            project_name,
            "-o",
            str(project_dir),
        ]
        try:
            self._run_tool(arguments, f"create project from template '{short_name}'")
            if not project_dir.is_dir():
                raise ProjectCreationError(
                    f"Scaffolding tool reported success but did not create {project_dir}",
                    command=[*self.settings.tool, *arguments],
                )
        except ProjectCreationError:
            shutil.rmtree(project_dir, ignore_errors=True)
            self._discard_template(template_directory, teardown_policy or options.teardown_policy)
            raise

        instance = TemplateProjectInstance(
            str(template_id),
            project_dir,
            options,
            project_name,
            template_directory=template_directory,
            teardown_policy=teardown_policy,
        )
        logger.key_info(f"Created template project {project_dir.name} ({options})")

        if options.update_actions:
            try:
                options.apply_updates(SourcePatcher(instance, self.settings.fixture_directory))
            except Exception:
                if not instance.teardown_policy.keeps_directory:
                    shutil.rmtree(project_dir, ignore_errors=True)
                self._discard_template(template_directory, instance.teardown_policy)
                raise
            logger.debug(f"Applied {len(options.update_actions)} update action(s) to {project_dir.name}")

        return instance
