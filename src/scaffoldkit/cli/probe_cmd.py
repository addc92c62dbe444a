"""'scaffoldkit probe': wait for an HTTP or TCP endpoint to become ready."""

import asyncio
import sys

import click
from rich.markup import escape

from scaffoldkit.cli.styles import Messages, console
from scaffoldkit.exceptions import ProbeTimeoutError
from scaffoldkit.models import EndpointDescriptor, HealthReport, HttpEndpoint, TcpEndpoint
from scaffoldkit.probe import ReadinessProber
from scaffoldkit.utils.config import HarnessSettings, get_config_builder


def parse_target(
    target: str, statuses: tuple[int, ...] = (), read_payload: bool = False, health: bool = False
) -> EndpointDescriptor:
    """Turn ``http(s)://...``, ``host:port`` or ``port`` into an endpoint descriptor."""
    if target.startswith(("http://", "https://")):
        predicate = None
        if health:
            predicate = lambda response: HealthReport.parse(response.content).is_healthy  # noqa: E731
        return HttpEndpoint(
            target, expected_status=frozenset(statuses) if statuses else None, predicate=predicate
        )

    host, _, port = target.rpartition(":")
    try:
        port_number = int(port)
    except ValueError as e:
        raise click.BadParameter(
            f"Expected an http(s) URL, host:port or port, got '{target}'", param_hint="TARGET"
        ) from e

    predicate = (lambda payload: HealthReport.parse(payload).is_healthy) if health else None
    return TcpEndpoint(
        port_number, host=host or "127.0.0.1", read_payload=read_payload, predicate=predicate
    )


@click.command()
@click.argument("target")
@click.option("--timeout", "-t", type=float, help="Seconds to wait (default: readiness.timeout_seconds)")
@click.option(
    "--interval", "-i", type=float, help="Seconds between attempts (default: readiness.poll_interval_seconds)"
)
@click.option("--status", "-s", "statuses", type=int, multiple=True, help="HTTP status that counts as ready")
@click.option("--read-payload", is_flag=True, help="TCP: read to end of stream and require a JSON health report")
@click.option("--health", is_flag=True, help="Require a Healthy JSON health report")
@click.pass_context
def probe(ctx, target, timeout, interval, statuses, read_payload, health):
    """Wait until TARGET is ready.

    TARGET is an http(s) URL, a host:port pair or a bare local port.

    Exit Codes:
    \b
      0 - Endpoint is ready
      1 - Endpoint did not become ready in time
    """
    settings = HarnessSettings.from_config(get_config_builder((ctx.obj or {}).get("config_path")))
    endpoint = parse_target(target, statuses, read_payload, health)
    timeout = settings.readiness_timeout if timeout is None else timeout
    interval = settings.poll_interval if interval is None else interval

    prober = ReadinessProber()
    try:
        attempts = asyncio.run(prober.await_ready(endpoint, timeout=timeout, poll_interval=interval))
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    except ProbeTimeoutError as e:
        console.print(Messages.error(escape(e.message)))
        sys.exit(1)

    console.print(Messages.success(f"{escape(endpoint.describe())} is ready after {attempts} attempt(s)"))
