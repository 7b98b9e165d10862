"""
Backend Transports

Responsibilities:
- Authenticate the agent against the backend
- Deliver registry changes and connection test requests as events
- Upload readings, test outcomes and heartbeats
"""

from .base import BackendTransport
from .rest import RestTransport
from .websocket import WebSocketTransport

__all__ = ["BackendTransport", "RestTransport", "WebSocketTransport"]
