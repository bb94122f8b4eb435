"""
WebSocket connection manager for the Realtime Service.
"""

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from shared.logging import get_logger
from shared.errors import ConnectionLimitExceeded
from shared.metrics import MetricsCollector
from ..auth.gate import AuthGate
from ..cache.snapshot_cache import SnapshotCache
from ..subscriptions.registry import TopicRegistry
from .session import ConnectionSession, SessionState


class WebSocketConnectionManager:
    """Owns the live sessions of the service."""

    def __init__(
        self,
        registry: TopicRegistry,
        snapshots: SnapshotCache,
        auth_gate: AuthGate,
        max_connections: int = 1000,
        delivery_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.snapshots = snapshots
        self.auth_gate = auth_gate
        self.max_connections = max_connections
        self.delivery_timeout = delivery_timeout
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("realtime.ws.connection_manager")

        self.connections: Dict[str, ConnectionSession] = {}

    def add_connection(
        self,
        websocket: Any,
        client_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ConnectionSession:
        """Create a session for a newly accepted transport."""
        if len(self.connections) >= self.max_connections:
            raise ConnectionLimitExceeded(self.max_connections)

        connection_id = str(uuid.uuid4())
        session = ConnectionSession(
            connection_id=connection_id,
            websocket=websocket,
            registry=self.registry,
            snapshots=self.snapshots,
            auth_gate=self.auth_gate,
            client_id=client_id,
            delivery_timeout=self.delivery_timeout,
            clock=self.clock,
            metadata=metadata
        )
        self.connections[connection_id] = session
        self._update_gauge()

        self.logger.info(
            "WebSocket connection added",
            connection_id=connection_id,
            client_id=client_id,
            total_connections=len(self.connections)
        )
        return session

    async def remove_connection(
        self,
        connection_id: str,
        code: int = 1000,
        reason: Optional[str] = None,
        close_transport: bool = True
    ) -> Optional[ConnectionSession]:
        """Close a session and forget it. Unknown IDs are ignored."""
        session = self.connections.pop(connection_id, None)
        if session is None:
            return None

        await session.close(code=code, reason=reason, close_transport=close_transport)
        self._update_gauge()
        if self.metrics:
            self.metrics.observe_histogram("connection_duration_seconds", session.connected_for())

        self.logger.info(
            "WebSocket connection removed",
            connection_id=connection_id,
            total_connections=len(self.connections)
        )
        return session

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down"):
        for connection_id in list(self.connections):
            await self.remove_connection(connection_id, code=code, reason=reason)

    def get_connection(self, connection_id: str) -> Optional[ConnectionSession]:
        """Get session by ID."""
        return self.connections.get(connection_id)

    def sessions(self) -> List[ConnectionSession]:
        """Snapshot of live sessions."""
        return [s for s in self.connections.values() if not s.is_closed]

    def anonymous_sessions(self) -> List[ConnectionSession]:
        return [s for s in self.connections.values() if s.state is SessionState.CONNECTED_ANONYMOUS]

    def _update_gauge(self):
        if self.metrics:
            self.metrics.set_gauge("active_connections", len(self.connections))

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        authenticated = sum(1 for s in self.connections.values() if s.is_authenticated)
        return {
            "total_connections": len(self.connections),
            "max_connections": self.max_connections,
            "authenticated_connections": authenticated,
            "anonymous_connections": len(self.connections) - authenticated,
            "users": len({s.user_id for s in self.connections.values() if s.user_id})
        }
