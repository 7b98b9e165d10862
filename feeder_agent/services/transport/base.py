"""
Backend Transport Interface

REST polling and WebSocket push are interchangeable behind this class.
Each transport delivers backend-side changes through a single event
channel (events()) and exposes the upstream report calls.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from ...common.config import AgentConfig
from ...common.events import (
    AgentDescriptor,
    Connected,
    Disconnected,
    ReadingRecord,
    TransportEvent,
)
from ...common.logging_setup import get_service_logger
from ..device.executor import ReadOutcome

logger = get_service_logger("transport")


class BackendTransport(ABC):
    """Base class for backend transports"""

    name = "transport"

    def __init__(self, config: AgentConfig):
        self.config = config
        self.agent: AgentDescriptor | None = None
        self.workspaces: list[dict[str, Any]] = []

        self._events: asyncio.Queue[TransportEvent | None] = asyncio.Queue()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def authenticated(self) -> bool:
        return self.agent is not None

    def emit(self, event: TransportEvent) -> None:
        """Queue an event for the session"""
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Events in arrival order until the transport is closed"""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    def _mark_connected(self) -> None:
        if not self._connected:
            self._connected = True
            logger.info(f"Connected to backend via {self.name}: {self.config.backend_url}")
            self.emit(Connected())

    def _mark_disconnected(self, reason: str) -> None:
        if self._connected:
            self._connected = False
            logger.warning(f"Disconnected from backend: {reason}")
            self.emit(Disconnected(reason))

    def _finish_events(self) -> None:
        self._events.put_nowait(None)

    @abstractmethod
    async def start(self) -> None:
        """
        Connect and authenticate.

        Raises:
            AuthenticationError: the backend rejected the secret
            TransportError: the backend could not be reached
        """

    @abstractmethod
    async def fetch_registry_config(self) -> list[dict[str, Any]]:
        """Current registry as raw records"""

    @abstractmethod
    async def report_readings(self, readings: list[ReadingRecord]) -> None:
        """
        Upload a batch of poll results.

        Raises:
            ReportingError: upload rejected or failed
        """

    @abstractmethod
    async def report_test_outcome(self, test_id: str, outcome: ReadOutcome) -> None:
        """
        Report a connection test outcome.

        Raises:
            ReportingError: upload rejected or failed
        """

    @abstractmethod
    async def send_heartbeat(self) -> None:
        """Keep-alive"""

    @abstractmethod
    async def link_workspace(self, code: str) -> dict[str, Any] | None:
        """Link this agent to a workspace with a one-time code"""

    @abstractmethod
    async def close(self) -> None:
        """Stop background work and release the connection"""
