"""Readiness probing for launched template projects.

:class:`ReadinessProber` repeatedly probes an endpoint until it reports ready
or a hard deadline passes. Every error during an attempt (connection refused,
reset, bad status, unreadable payload) means "not ready yet" and is retried;
only the deadline ends the wait.

The prober keeps no state between calls, so one prober can be shared by any
number of concurrent waits on different instances::

    prober = ReadinessProber()
    await prober.await_ready(HttpEndpoint("http://localhost:5000/"), timeout=10, poll_interval=1)
"""

import asyncio
import contextlib

import httpx

from scaffoldkit.exceptions import ProbeTimeoutError
from scaffoldkit.models import EndpointDescriptor, HttpEndpoint, TcpEndpoint
from scaffoldkit.utils.logger import get_logger

logger = get_logger("probe")

MIN_POLL_INTERVAL = 0.05


class NotReadyYet(Exception):
    """An attempt completed but the endpoint did not satisfy its predicate."""


class ReadinessProber:
    """Polls HTTP and TCP endpoints under a timeout.

    :param transport: Optional httpx transport, used for in-process test servers
    :param attempt_timeout: Upper bound for a single attempt, further capped by
        the time remaining until the deadline
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, attempt_timeout: float = 5.0):
        self.transport = transport
        self.attempt_timeout = attempt_timeout

    async def await_ready(
        self,
        endpoint: EndpointDescriptor,
        timeout: float,
        poll_interval: float,
        process=None,
    ) -> int:
        """Wait until ``endpoint`` is ready.

        Args:
            endpoint: HTTP or TCP endpoint to probe
            timeout: Seconds until giving up
            poll_interval: Seconds between attempts
            process: Optional :class:`ProcessHandle`; waiting stops early if it exits

        Returns:
            Number of attempts it took

        Raises:
            ValueError: If the poll interval is below 50 ms or not shorter than the timeout
            ProbeTimeoutError: If the endpoint is not ready before the deadline
        """
        if poll_interval < MIN_POLL_INTERVAL:
            raise ValueError(
                f"Poll interval must be at least {MIN_POLL_INTERVAL * 1000:g}ms, got {poll_interval:g}s"
            )
        if poll_interval >= timeout:
            raise ValueError(
                f"Poll interval ({poll_interval:g}s) must be shorter than the timeout ({timeout:g}s)"
            )

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        attempts = 0
        last_failure: str | None = None

        logger.debug(f"Waiting up to {timeout:g}s for {endpoint.describe()}")
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            attempts += 1
            try:
                await asyncio.wait_for(self._attempt(endpoint), timeout=min(remaining, self.attempt_timeout))
            except NotReadyYet as e:
                last_failure = str(e)
            except TimeoutError:
                last_failure = "attempt timed out"
            except (httpx.HTTPError, OSError, ValueError) as e:
                last_failure = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            else:
                logger.timing(
                    f"{endpoint.describe()} ready after {attempts} attempt(s) in {loop.time() - started:.2f}s"
                )
                return attempts

            if process is not None and not process.is_alive:
                tail = "\n".join(process.output_tail(20))
                raise ProbeTimeoutError(
                    endpoint.describe(),
                    timeout,
                    attempts,
                    f"process exited with code {process.returncode} before becoming ready"
                    + (f"; output tail:\n{tail}" if tail else ""),
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))

        logger.warning(f"{endpoint.describe()} not ready after {timeout:g}s: {last_failure}")
        raise ProbeTimeoutError(endpoint.describe(), timeout, attempts, last_failure)

    def wait_ready(self, endpoint: EndpointDescriptor, timeout: float, poll_interval: float, process=None) -> int:
        """Blocking variant of :meth:`await_ready` for synchronous callers."""
        return asyncio.run(self.await_ready(endpoint, timeout, poll_interval, process=process))

    async def _attempt(self, endpoint: EndpointDescriptor) -> None:
        if isinstance(endpoint, HttpEndpoint):
            await self._attempt_http(endpoint)
        elif isinstance(endpoint, TcpEndpoint):
            await self._attempt_tcp(endpoint)
        else:
            raise TypeError(f"Unsupported endpoint type: {type(endpoint).__name__}")

    async def _attempt_http(self, endpoint: HttpEndpoint) -> None:
        async with httpx.AsyncClient(transport=self.transport, trust_env=False) as client:
            response = await client.get(endpoint.url, headers=dict(endpoint.headers))
        if not endpoint.is_ready(response):
            raise NotReadyYet(f"HTTP {response.status_code} from {endpoint.url}")

    async def _attempt_tcp(self, endpoint: TcpEndpoint) -> None:
        reader, writer = await asyncio.open_connection(endpoint.host, endpoint.port)
        try:
            payload = None
            if endpoint.reads_payload:
                payload = (await reader.read()).decode("utf-8", errors="replace")
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        if not endpoint.is_ready(payload):
            raise NotReadyYet(f"TCP payload from {endpoint.describe()} not accepted: {payload!r}")
