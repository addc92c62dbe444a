"""Main CLI entry point for scaffoldkit.

Organizes all commands under the ``scaffoldkit`` command namespace. Commands
are imported only when invoked so ``scaffoldkit --help`` stays fast.
"""

import importlib
import sys

import click

from scaffoldkit import __version__

COMMANDS = {
    "new": ("scaffoldkit.cli.new_cmd", "new"),
    "probe": ("scaffoldkit.cli.probe_cmd", "probe"),
    "sweep-dirs": ("scaffoldkit.cli.sweep_cmd", "sweep_dirs"),
}


class LazyGroup(click.Group):
    """Click group that lazily loads subcommands only when invoked."""

    def get_command(self, ctx, cmd_name):
        if cmd_name not in COMMANDS:
            return None
        module_name, attribute = COMMANDS[cmd_name]
        return getattr(importlib.import_module(module_name), attribute)

    def list_commands(self, ctx):
        return list(COMMANDS)


@click.group(cls=LazyGroup)
@click.version_option(version=__version__, prog_name="scaffoldkit")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    envvar="SCAFFOLDKIT_CONFIG",
    help="Harness configuration file (default: scaffoldkit.yml in the current directory)",
)
@click.pass_context
def cli(ctx, config_path):
    """scaffoldkit - ephemeral template projects for integration tests.

    Use 'scaffoldkit COMMAND --help' for more information on a specific command.

    Examples:

    \b
      scaffoldkit new webapi -o "--authentication SharedAccessKey"
      scaffoldkit probe http://localhost:5000/not-exist --timeout 10
      scaffoldkit probe localhost:42063 --read-payload
      scaffoldkit sweep-dirs --dry-run
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def main():
    """Entry point for the scaffoldkit CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
