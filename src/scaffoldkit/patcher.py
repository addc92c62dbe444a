"""Text-level patching of generated project files.

Generated sources are treated as opaque text: every edit is a pure
``str -> str`` transform applied to the whole file and written back
atomically (temporary file in the same directory, then ``os.replace``), so a
failing transform or an interrupted write never leaves a half-written file.

Patching is only allowed between materialization and launch. Changing files
of a running project requires a stop/launch cycle.
"""

import os
import shutil
import tempfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, StrictUndefined

from scaffoldkit.exceptions import FileNotFoundInProjectError, FixtureAmbiguityError
from scaffoldkit.models import InstanceState
from scaffoldkit.utils.logger import get_logger

if TYPE_CHECKING:
    from scaffoldkit.instance import TemplateProjectInstance

logger = get_logger("patcher")

ENCODING = "utf-8"


def atomic_write_text(path: Path, contents: str) -> None:
    """Replace ``path`` with ``contents`` without exposing a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=ENCODING, newline="") as f:
            f.write(contents)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class SourcePatcher:
    """Applies textual transformations to the files of one project instance."""

    def __init__(self, instance: "TemplateProjectInstance", fixture_directory: Path | None = None):
        self.instance = instance
        self.fixture_directory = fixture_directory

    @property
    def project_dir(self) -> Path:
        return self.instance.project_dir

    def resolve(self, relative_path: str | Path) -> Path:
        """Resolve a project-relative path, refusing paths that escape the project."""
        root = self.project_dir.resolve()
        target = (root / relative_path).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Path '{relative_path}' points outside the project directory {root}")
        return target

    def read_file(self, relative_path: str | Path) -> str:
        target = self.resolve(relative_path)
        if not target.is_file():
            raise FileNotFoundInProjectError(relative_path, self.project_dir)
        with open(target, encoding=ENCODING, newline="") as f:
            return f.read()

    def contains_file(self, relative_path: str | Path) -> bool:
        return self.resolve(relative_path).is_file()

    def update_file(self, relative_path: str | Path, transform: Callable[[str], str]) -> None:
        """Rewrite a project file with ``transform(contents)``.

        Raises:
            FileNotFoundInProjectError: If the file does not exist in the project
        """
        self.instance.require_transition(InstanceState.PATCHED)
        target = self.resolve(relative_path)
        if not target.is_file():
            raise FileNotFoundInProjectError(relative_path, self.project_dir)

        contents = self.read_file(relative_path)
        updated = transform(contents)
        if not isinstance(updated, str):
            raise TypeError(
                f"Patch transform for '{relative_path}' must return str, got {type(updated).__name__}"
            )

        atomic_write_text(target, updated)
        self.instance.mark_patched()
        logger.debug(f"Updated {relative_path} in {self.project_dir.name}")

    def replace_text(self, relative_path: str | Path, replacements: Mapping[str, str]) -> None:
        """Apply literal ``old -> new`` replacements to a project file, in order."""

        def transform(contents: str) -> str:
            for old, new in replacements.items():
                contents = contents.replace(old, new)
            return contents

        self.update_file(relative_path, transform)

    def prepend_line(self, relative_path: str | Path, line: str) -> None:
        """Insert a line at the top of a file, e.g. an import or using statement."""
        self.update_file(relative_path, lambda contents: f"{line}{os.linesep}{contents}")

    def remove_lines_containing(self, relative_path: str | Path, marker: str) -> None:
        """Drop every line that contains ``marker``."""

        def transform(contents: str) -> str:
            kept = [line for line in contents.splitlines(keepends=True) if marker not in line]
            return "".join(kept)

        self.update_file(relative_path, transform)

    def add_file(self, relative_path: str | Path, contents: str) -> Path:
        """Write a new (or replace an existing) file in the project."""
        self.instance.require_transition(InstanceState.PATCHED)
        target = self.resolve(relative_path)
        atomic_write_text(target, contents)
        self.instance.mark_patched()
        logger.debug(f"Added {relative_path} to {self.project_dir.name}")
        return target

    def add_file_from_type(
        self,
        source_content: str,
        target_relative_path: str | Path,
        replacements: Mapping[str, str] | None = None,
    ) -> Path:
        """Add fixture source code to the project, rewriting e.g. its namespace."""
        contents = source_content
        for old, new in (replacements or {}).items():
            contents = contents.replace(old, new)
        return self.add_file(target_relative_path, contents)

    def find_fixture(self, fixture_name: str) -> Path:
        """Locate exactly one fixture file by name under the fixture directory."""
        if self.fixture_directory is None:
            raise FileNotFoundError(
                f"Cannot find fixture '{fixture_name}': no fixture directory is configured "
                "(projects.fixture_directory)"
            )

        matches = sorted(self.fixture_directory.rglob(fixture_name))
        if not matches:
            raise FileNotFoundError(
                f"Cannot find fixture with file name: {fixture_name} in directory: {self.fixture_directory}"
            )
        if len(matches) > 1:
            raise FixtureAmbiguityError(fixture_name, matches)
        return matches[0]

    def add_fixture_file(
        self,
        fixture_name: str,
        target_dir: Sequence[str] = (),
        replacements: Mapping[str, str] | None = None,
    ) -> Path:
        """Copy a fixture file into ``target_dir`` of the project with replacements applied."""
        source = self.find_fixture(fixture_name)
        source_content = source.read_text(encoding=ENCODING)
        return self.add_file_from_type(
            source_content, Path(*target_dir, source.name), replacements=replacements
        )

    def render_template_file(
        self, template_text: str, target_relative_path: str | Path, context: Mapping[str, Any]
    ) -> Path:
        """Render a Jinja2 template into the project; undefined variables are errors."""
        env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
        rendered = env.from_string(template_text).render(**context)
        return self.add_file(target_relative_path, rendered)
