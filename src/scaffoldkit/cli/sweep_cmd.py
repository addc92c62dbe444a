"""'scaffoldkit sweep-dirs': remove project directories left behind by crashed runs."""

import re
import time
from pathlib import Path

import click
from rich.markup import escape

from scaffoldkit.cli.styles import Messages, console
from scaffoldkit.lifecycle import remove_directory
from scaffoldkit.utils.config import HarnessSettings, get_config_builder


def find_project_directories(root: Path, project_name: str, min_age: float = 0) -> list[Path]:
    """List ``<project_name>-<uuid hex>`` directories under ``root`` older than ``min_age`` seconds."""
    pattern = re.compile(rf"^{re.escape(project_name)}-[0-9a-f]{{32}}$")
    if not root.is_dir():
        return []

    now = time.time()
    return sorted(
        path
        for path in root.iterdir()
        if path.is_dir() and pattern.match(path.name) and now - path.stat().st_mtime >= min_age
    )


@click.command("sweep-dirs")
@click.option(
    "--root", type=click.Path(file_okay=False, path_type=Path), help="Projects root (default: projects.root)"
)
@click.option("--name", "-n", "project_name", help="Project name (default: scaffolding.project_name)")
@click.option("--min-age", type=float, default=0, show_default=True, help="Only directories older than this (seconds)")
@click.option("--dry-run", is_flag=True, help="List directories without removing them")
@click.pass_context
def sweep_dirs(ctx, root, project_name, min_age, dry_run):
    """Remove leftover generated project directories.

    Only directories named like generated projects (<name>-<32 hex digits>)
    are considered.
    """
    settings = HarnessSettings.from_config(get_config_builder((ctx.obj or {}).get("config_path")))
    root = root or settings.projects_root
    project_name = project_name or settings.project_name

    directories = find_project_directories(root, project_name, min_age)
    if not directories:
        console.print(
            Messages.info(f"No leftover '{escape(project_name)}' project directories in {escape(str(root))}")
        )
        return

    failures = 0
    for directory in directories:
        if dry_run:
            console.print(Messages.path(escape(str(directory))))
            continue
        try:
            remove_directory(directory, timeout=2)
        except OSError as e:
            failures += 1
            console.print(Messages.warning(f"Could not remove {escape(str(directory))}: {escape(str(e))}"))
        else:
            console.print(Messages.success(f"Removed {escape(str(directory))}"))

    if dry_run:
        console.print(Messages.info(f"{len(directories)} directory(ies) would be removed"))
    elif failures:
        raise click.exceptions.Exit(1)
