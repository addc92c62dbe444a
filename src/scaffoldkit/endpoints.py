"""Thin clients for the endpoints exposed by generated projects.

These services are owned by the test that created them. Register them on the
instance with ``instance.add_resource(service)`` so teardown closes their
HTTP connections, or use them as async context managers.
"""

import asyncio
import contextlib
import uuid
from collections.abc import Mapping

import httpx

from scaffoldkit.models import HealthReport
from scaffoldkit.utils.logger import get_logger

logger = get_logger("endpoints")

TRANSACTION_ID_HEADER = "X-Transaction-Id"
OPERATION_ID_HEADER = "X-Operation-Id"


def correlation_headers(transaction_id: str | None = None, operation_id: str | None = None) -> dict[str, str]:
    """Build correlation headers, generating a transaction id when none is given."""
    headers = {TRANSACTION_ID_HEADER: transaction_id or str(uuid.uuid4())}
    if operation_id:
        headers[OPERATION_ID_HEADER] = operation_id
    return headers


class EndpointService:
    """Base class for HTTP endpoint clients of one running project."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport, trust_env=False
            )
        return self._client

    async def get(self, path: str = "", headers: Mapping[str, str] | None = None) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url
        logger.info(f"GET -> {url}")
        response = await self.client.get(url, headers=dict(headers or {}))
        logger.info(f"{response.status_code} <- {url} {dict(response.headers)}")
        return response

    async def post(self, path: str, json: object = None, headers: Mapping[str, str] | None = None) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.info(f"POST -> {url}")
        response = await self.client.post(url, json=json, headers=dict(headers or {}))
        logger.info(f"{response.status_code} <- {url}")
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class RootEndpointService(EndpointService):
    """Calls the root route of a web project, optionally with correlation headers."""

    async def get_root(self, headers: Mapping[str, str] | None = None) -> httpx.Response:
        return await self.get("", headers=headers)

    async def get_correlated(
        self, transaction_id: str | None = None, operation_id: str | None = None
    ) -> httpx.Response:
        return await self.get("", headers=correlation_headers(transaction_id, operation_id))


class HealthEndpointService(EndpointService):
    """Health route of a web project.

    :param base_url: Project base URL, e.g. ``http://localhost:5000``
    :param path: Route of the health report
    """

    def __init__(self, base_url: str, path: str = "api/v1/health", **kwargs):
        super().__init__(base_url, **kwargs)
        self.path = path

    async def get_health(self, headers: Mapping[str, str] | None = None) -> httpx.Response:
        return await self.get(self.path, headers=headers)

    async def probe_health(self, headers: Mapping[str, str] | None = None) -> HealthReport:
        """Request the health report and parse it.

        Raises:
            httpx.HTTPStatusError: If the route does not answer with a success status
            pydantic.ValidationError: If the body is not a health report
        """
        response = await self.get_health(headers=headers)
        response.raise_for_status()
        return HealthReport.parse(response.content)


class TcpHealthEndpointService:
    """Health report served over a raw TCP socket by worker projects.

    The worker writes the JSON report and closes the connection, so the whole
    stream is read to end of file.
    """

    def __init__(self, port: int, host: str = "127.0.0.1", timeout: float = 10.0):
        if port <= 0:
            raise ValueError(f"TCP health port should be greater than zero, got {port}")
        self.port = port
        self.host = host
        self.timeout = timeout

    async def read_raw(self) -> str:
        logger.info(f"Connecting to TCP health endpoint {self.host}:{self.port}")
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.timeout
        )
        try:
            payload = await asyncio.wait_for(reader.read(), timeout=self.timeout)
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        text = payload.decode("utf-8", errors="replace")
        logger.debug(f"Read {len(payload)} bytes from TCP health endpoint {self.host}:{self.port}")
        return text

    async def probe_health(self) -> HealthReport:
        return HealthReport.parse(await self.read_raw())

    def close(self) -> None:
        # Each probe opens and closes its own connection
        pass


class AdminEndpointService(EndpointService):
    """Manual trigger of a function through the functions host admin route."""

    def __init__(self, port: int, function_name: str, host: str = "localhost", **kwargs):
        if not function_name or not function_name.strip():
            raise ValueError("Requires a non-blank function name to trigger")
        super().__init__(f"http://{host}:{port}", **kwargs)
        self.function_name = function_name

    async def trigger_function(self) -> httpx.Response:
        """POST an empty JSON object to ``/admin/functions/<name>``.

        Raises:
            httpx.HTTPStatusError: If the host does not accept the trigger
        """
        response = await self.post(f"admin/functions/{self.function_name}", json={})
        response.raise_for_status()
        return response
