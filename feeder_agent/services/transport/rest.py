"""
REST Transport

Talks to the backend's agent API over HTTP with a bearer token. The
registry and the pending connection tests are polled on fixed intervals
and surfaced as transport events.

Endpoints (all under /api):
    POST /agente/auth                   secret -> token, agent, workspaces
    GET  /agente/config                 current registry
    GET  /agente/tests-pendientes       connection tests awaiting execution
    POST /agente/lecturas               batch of readings
    POST /agente/tests/{id}/resultado   outcome of one test
    POST /agente/heartbeat              keep-alive
    POST /agente/vincular               link to a workspace with a code
"""

import asyncio
from typing import Any, Awaitable, Callable

import httpx

from ...common.config import AgentConfig
from ...common.events import Authenticated, ReadingRecord, RegistryChanged, TestRequested
from ...common.exceptions import (
    AgentError,
    AuthenticationError,
    ConfigError,
    ReportingError,
    TransportError,
)
from ...common.logging_setup import get_service_logger
from ..device.executor import ReadOutcome
from . import wire
from .base import BackendTransport

logger = get_service_logger("transport.rest")

API_PREFIX = "/api"
AUTH_PATH = "/agente/auth"
CONFIG_PATH = "/agente/config"
PENDING_TESTS_PATH = "/agente/tests-pendientes"
READINGS_PATH = "/agente/lecturas"
TEST_RESULT_PATH = "/agente/tests/{test_id}/resultado"
HEARTBEAT_PATH = "/agente/heartbeat"
LINK_PATH = "/agente/vincular"

TOKEN_EXPIRED = "TOKEN_EXPIRED"


class RestTransport(BackendTransport):
    """HTTP polling transport"""

    name = "rest"

    def __init__(self, config: AgentConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config)
        self._client = client
        self._owns_client = client is None
        self._token: str | None = None
        self.warning: str | None = None
        self._tasks: list[asyncio.Task] = []

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_s)
            self._owns_client = True
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.config.backend_url.rstrip('/')}{API_PREFIX}{path}"

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {}

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        retry_auth: bool = True,
    ) -> Any:
        """
        Send an API request and return the decoded body.

        A 401 carrying TOKEN_EXPIRED triggers one re-authentication and a
        single retry of the same request.

        Raises:
            TransportError: unreachable backend or non-2xx response
        """
        headers = {"Content-Type": "application/json"}
        if path != AUTH_PATH:
            if not self._token:
                raise TransportError("Not authenticated")
            headers["Authorization"] = f"Bearer {self._token}"

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                self._url(path),
                json=json,
                headers=headers,
                timeout=self.config.request_timeout_s,
            )
        except httpx.HTTPError as e:
            self._mark_disconnected(f"{type(e).__name__}: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

        self._mark_connected()
        data = self._json(response)

        if (
            response.status_code == 401
            and retry_auth
            and path != AUTH_PATH
            and isinstance(data, dict)
            and data.get("code") == TOKEN_EXPIRED
        ):
            logger.warning("Token expired, re-authenticating")
            await self.authenticate()
            return await self._request(method, path, json=json, retry_auth=False)

        if response.is_error:
            message = f"HTTP {response.status_code}"
            if isinstance(data, dict):
                message = wire.error_message(data, message)
            raise TransportError(f"{method} {path}: {message}", status_code=response.status_code)

        return data

    # --- Authentication ---

    async def authenticate(self) -> None:
        """
        Exchange the agent secret for a bearer token.

        Raises:
            ConfigError: no secret configured
            AuthenticationError: secret rejected
            TransportError: backend unreachable
        """
        if not self.config.secret:
            raise ConfigError("Agent secret is not configured")

        try:
            data = await self._request(
                "POST", AUTH_PATH, json=wire.auth_payload(self.config.secret), retry_auth=False
            )
        except TransportError as e:
            if e.status_code is not None and 400 <= e.status_code < 500:
                raise AuthenticationError(e.detail) from e
            raise

        if not isinstance(data, dict) or not wire.is_success(data) or not data.get("token"):
            raise AuthenticationError(
                wire.error_message(data) if isinstance(data, dict) else "invalid auth response"
            )

        self._token = data["token"]
        self.agent = wire.parse_agent(data.get("agente") or data.get("agent"))
        self.workspaces = wire.parse_workspaces(data)

        logger.info(
            f"Authenticated as {self.agent.name or self.agent.id}",
            extra={"agent_id": self.agent.id, "workspaces": len(self.workspaces)},
        )
        warning = wire.warning_message(data)
        if warning:
            logger.warning(warning)
        self.warning = warning

    async def start(self) -> None:
        await self.authenticate()
        self.emit(Authenticated(self.agent, list(self.workspaces), self.warning))

        self._tasks = [
            asyncio.create_task(
                self._poll_loop("config", self.config.config_poll_interval_s, self._poll_registry)
            ),
            asyncio.create_task(
                self._poll_loop("tests", self.config.tests_poll_interval_s, self._poll_tests)
            ),
        ]

    # --- Poll loops ---

    async def _poll_loop(
        self,
        name: str,
        interval_seconds: float,
        poll: Callable[[], Awaitable[None]],
    ) -> None:
        while not self._closed:
            await asyncio.sleep(interval_seconds)
            try:
                await poll()
            except AgentError as e:
                logger.warning(f"{name} poll failed: {e.message}")
            except Exception as e:
                logger.error(f"{name} poll error: {e}")

    async def _poll_registry(self) -> None:
        records = await self.fetch_registry_config()
        self.emit(RegistryChanged(records))

    async def _poll_tests(self) -> None:
        payload = await self._request("GET", PENDING_TESTS_PATH)
        for request in wire.parse_test_requests(payload, self.config.default_timeout_ms):
            self.emit(TestRequested(request))

    # --- Backend operations ---

    async def fetch_registry_config(self) -> list[dict[str, Any]]:
        data = await self._request("GET", CONFIG_PATH)
        return wire.registry_records(data)

    async def report_readings(self, readings: list[ReadingRecord]) -> None:
        if not readings:
            return
        payload = {"lecturas": [wire.reading_to_wire(r) for r in readings]}
        try:
            await self._request("POST", READINGS_PATH, json=payload)
        except TransportError as e:
            raise ReportingError(e.detail, "report_readings", e.status_code) from e

    async def report_test_outcome(self, test_id: str, outcome: ReadOutcome) -> None:
        path = TEST_RESULT_PATH.format(test_id=test_id)
        try:
            await self._request("POST", path, json=wire.outcome_to_wire(outcome))
        except TransportError as e:
            raise ReportingError(e.detail, "report_test_outcome", e.status_code) from e

    async def send_heartbeat(self) -> None:
        await self._request("POST", HEARTBEAT_PATH, json={"version": self.config.version})

    async def link_workspace(self, code: str) -> dict[str, Any] | None:
        data = await self._request("POST", LINK_PATH, json={"codigo": code})
        if isinstance(data, dict) and wire.is_success(data):
            workspace = data.get("workspace")
            if workspace:
                self.workspaces.append(workspace)
                logger.info(f"Linked to workspace {wire.workspace_name(workspace)}")
        return data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._connected = False
        self._finish_events()
        logger.info("REST transport closed")
