"""'scaffoldkit new': materialize a template project for manual inspection."""

import sys
from pathlib import Path

import click
from rich.markup import escape

from scaffoldkit.cli.styles import Messages, console
from scaffoldkit.exceptions import ProjectCreationError
from scaffoldkit.materializer import ProjectMaterializer
from scaffoldkit.models import TeardownPolicy
from scaffoldkit.options import DuplicateOptionError, ProjectOptions
from scaffoldkit.utils.config import HarnessSettings, get_config_builder


@click.command()
@click.argument("template")
@click.option(
    "--option",
    "-o",
    "arguments",
    multiple=True,
    help='Generation argument passed to the tool, e.g. -o "--authentication SharedAccessKey"',
)
@click.option("--feature", "-f", "features", multiple=True, help="Boolean template parameter to enable")
@click.option("--disable", "-d", "disabled", multiple=True, help="Boolean template parameter to disable")
@click.option("--name", "-n", "project_name", help="Project name (default: scaffolding.project_name)")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory the project directory is created in (default: projects.root)",
)
@click.pass_context
def new(ctx, template, arguments, features, disabled, project_name, root):
    """Generate a project from TEMPLATE and keep its directory.

    TEMPLATE is a template short name known to the scaffolding tool, or the
    path of a template directory containing .template.config/template.json.
    The generated directory is printed and left in place.
    """
    settings = HarnessSettings.from_config(get_config_builder((ctx.obj or {}).get("config_path")))

    try:
        options = ProjectOptions.empty()
        for argument in arguments:
            options = options.with_option(argument)
        for feature in features:
            options = options.with_feature(feature)
        for feature in disabled:
            options = options.with_feature(feature, enabled=False)
    except (DuplicateOptionError, ValueError) as e:
        raise click.BadParameter(str(e)) from e

    materializer = ProjectMaterializer(settings)
    try:
        instance = materializer.materialize(
            template,
            options,
            destination_root=root,
            teardown_policy=TeardownPolicy.KEEP_PROJECT_DIRECTORY | TeardownPolicy.KEEP_TEMPLATE_INSTALLED,
            project_name=project_name,
        )
    except ProjectCreationError as e:
        console.print(Messages.error(escape(e.message)))
        if e.stderr:
            console.print(e.stderr.rstrip(), markup=False, highlight=False)
        sys.exit(1)

    console.print(Messages.success(f"Created project from template '{escape(template)}'"))
    console.print(Messages.label_value("Options", escape(str(options))))
    console.print(Messages.label_value("Directory", Messages.path(escape(str(instance.project_dir)))))
