"""
System Services

Responsibilities:
- Send heartbeats to the backend
- Serve the local health and diagnostic endpoints
"""

from .health_server import HealthServer
from .heartbeat import HeartbeatSender

__all__ = ["HealthServer", "HeartbeatSender"]
