"""
Connection session for the Realtime Service.

A session is the server-side state of one WebSocket link:

    CONNECTED_ANONYMOUS -> AUTHENTICATED -> CLOSED
    CONNECTED_ANONYMOUS -> CLOSED

Subscriptions are recorded in the shared TopicRegistry only; the session's
topic set is read back from it.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from shared.logging import get_logger
from shared.errors import AuthRequired, DeliveryFailure, InvalidCredential
from ..auth.gate import AuthGate, Identity
from ..cache.snapshot_cache import SnapshotCache
from ..subscriptions.registry import TopicRegistry
from ..subscriptions.topics import parse_topic, user_topic
from .messages import Envelope


class SessionState(str, Enum):
    CONNECTED_ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """State machine for a single client connection."""

    def __init__(
        self,
        connection_id: str,
        websocket: Any,
        registry: TopicRegistry,
        snapshots: SnapshotCache,
        auth_gate: AuthGate,
        client_id: Optional[str] = None,
        delivery_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.connection_id = connection_id
        self.websocket = websocket
        self.registry = registry
        self.snapshots = snapshots
        self.auth_gate = auth_gate
        self.client_id = client_id
        self.delivery_timeout = delivery_timeout
        self.clock = clock
        self.metadata = metadata or {}
        self.logger = get_logger("realtime.ws.session")

        self.state = SessionState.CONNECTED_ANONYMOUS
        self.identity: Optional[Identity] = None
        self.created_at = clock()
        self.last_activity = self.created_at
        self.connected_at = datetime.now(timezone.utc)

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    @property
    def subscribed_topics(self) -> FrozenSet[str]:
        return self.registry.topics_for(self.connection_id)

    def touch(self):
        """Record inbound activity."""
        self.last_activity = self.clock()

    def idle_for(self) -> float:
        return self.clock() - self.last_activity

    def connected_for(self) -> float:
        return self.clock() - self.created_at

    async def authenticate(self, credential: Any) -> Optional[Identity]:
        """Verify a credential and promote the session.

        Raises InvalidCredential on failure; the session stays anonymous and
        open so the client can retry. Returns None if the session was closed
        while the credential was being verified.
        """
        if self.is_closed:
            return None

        identity = await self.auth_gate.verify(credential)

        # close() may have run while verify() was suspended
        if self.is_closed:
            self.logger.info(
                "Session closed during authentication",
                connection_id=self.connection_id
            )
            return None

        if self.is_authenticated:
            if identity.user_id != self.identity.user_id:
                raise InvalidCredential(
                    "Connection already authenticated as another user",
                    details={"user_id": self.identity.user_id}
                )
            return self.identity

        self.identity = identity
        self.state = SessionState.AUTHENTICATED
        self.registry.subscribe(user_topic(identity.user_id), self.connection_id)

        self.logger.info(
            "Connection authenticated",
            connection_id=self.connection_id,
            user_id=identity.user_id,
            username=identity.username
        )
        return identity

    async def subscribe(self, topic: str) -> bool:
        """Subscribe to a topic and replay its latest snapshot.

        Raises AuthRequired while anonymous and InvalidTopic for malformed
        topics. Returns False if the session is already closed.
        """
        if self.is_closed:
            return False
        if not self.is_authenticated:
            raise AuthRequired()

        parsed = parse_topic(topic)
        if parsed.is_personal and parsed.entity_id != self.user_id:
            raise AuthRequired("Cannot subscribe to another user's notifications")

        # No await between the state check above and this write
        self.registry.subscribe(topic, self.connection_id)
        snapshot = self.snapshots.read(topic)

        if snapshot is not None:
            try:
                await self.send(snapshot)
            except DeliveryFailure as e:
                self.logger.warning(
                    "Snapshot replay failed",
                    connection_id=self.connection_id,
                    topic=topic,
                    error=e.message
                )

        return True

    def unsubscribe(self, topic: str) -> bool:
        """Unsubscribe from a topic. Never fails."""
        return self.registry.unsubscribe(topic, self.connection_id)

    async def send(self, envelope: Envelope):
        """Write one frame to the transport.

        Raises DeliveryFailure if the session is closed or the write fails.
        """
        if self.is_closed:
            raise DeliveryFailure(self.connection_id, "Connection closed")

        try:
            await asyncio.wait_for(
                self.websocket.send_text(envelope.to_json()),
                timeout=self.delivery_timeout
            )
        except asyncio.TimeoutError:
            raise DeliveryFailure(self.connection_id, "Delivery timed out", {"event": envelope.event})
        except Exception as e:
            raise DeliveryFailure(self.connection_id, str(e) or "Delivery failed", {"event": envelope.event})

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send a direct reply frame; failures are logged, not raised."""
        try:
            await self.send(Envelope(event, data or {}))
            return True
        except DeliveryFailure as e:
            self.logger.warning(
                "Failed to send message to connection",
                connection_id=self.connection_id,
                event_name=event,
                error=e.message
            )
            return False

    async def close(self, code: int = 1000, reason: Optional[str] = None, close_transport: bool = True) -> bool:
        """Close the session. Safe to call more than once.

        Registry cleanup and the state change happen before the first await,
        so every membership present at this point is removed.
        """
        if self.is_closed:
            return False

        removed = self.registry.unsubscribe_all(self.connection_id)
        self.state = SessionState.CLOSED

        self.logger.info(
            "Connection closed",
            connection_id=self.connection_id,
            user_id=self.user_id,
            subscriptions_removed=removed,
            reason=reason
        )

        if close_transport:
            try:
                await self.websocket.close(code=code, reason=reason)
            except Exception as e:
                self.logger.debug(
                    "Transport close failed",
                    connection_id=self.connection_id,
                    error=str(e)
                )
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "client_id": self.client_id,
            "state": self.state.value,
            "user_id": self.user_id,
            "username": self.identity.username if self.identity else None,
            "subscribed_topics": sorted(self.subscribed_topics),
            "connected_at": self.connected_at.isoformat(),
            "idle_seconds": round(self.idle_for(), 3)
        }
