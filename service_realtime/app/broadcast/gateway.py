"""
Broadcast gateway for the Realtime Service.

Collectors push updates through this gateway. A publish stores the envelope
as the topic's snapshot, resolves the topic's subscribers, and delivers to
each of them. Deliveries are isolated from one another: a failed write is
logged and counted and never aborts the fan-out.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Optional

from shared.logging import get_logger
from shared.errors import DeliveryFailure
from shared.metrics import MetricsCollector
from ..cache.snapshot_cache import SnapshotCache
from ..subscriptions.registry import TopicRegistry
from ..subscriptions.topics import GLOBAL_TRENDS_TOPIC, game_topic, streamer_topic, user_topic
from ..ws.connection_manager import WebSocketConnectionManager
from ..ws.messages import Envelope, OutboundEvent, utc_timestamp
from ..ws.session import ConnectionSession


DEFAULT_TTLS = {
    "streamer": 60,
    "game": 300,
    "global_trends": 300,
    "viewer_count": 30,
}


class BroadcastGateway:
    """Fans published updates out to subscribed connections."""

    def __init__(
        self,
        registry: TopicRegistry,
        snapshots: SnapshotCache,
        connections: WebSocketConnectionManager,
        ttls: Optional[Dict[str, float]] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.snapshots = snapshots
        self.connections = connections
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.metrics = metrics
        self.logger = get_logger("realtime.broadcast.gateway")

        # Per-topic locks keep each topic's deliveries in publish order
        self._topic_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, topic: str):
        lock = self._topic_locks.setdefault(topic, asyncio.Lock())
        self._lock_users[topic] = self._lock_users.get(topic, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[topic] -= 1
            if not self._lock_users[topic]:
                del self._lock_users[topic]
                del self._topic_locks[topic]

    async def publish(
        self,
        topic: str,
        event: str,
        data: Dict[str, Any],
        ttl_seconds: Optional[float] = None
    ) -> int:
        """Store a snapshot for a topic and deliver it to its subscribers.

        Publishes to one topic are serialized, so the stored snapshot and the
        deliveries advance together in call order.

        Topics without subscribers are not an error. Returns the number of
        connections the update was delivered to.
        """
        envelope = Envelope(event, data)

        async with self._serialized(topic):
            # The snapshot always matches the last update handed to subscribers
            self.snapshots.store(topic, envelope, ttl_seconds)
            subscribers = self.registry.resolve_subscribers(topic)
            sent_count = await self._deliver(subscribers, envelope)

        self.logger.debug(
            "Published topic update",
            topic=topic,
            event_name=event,
            subscriber_count=len(subscribers),
            sent_count=sent_count
        )
        return sent_count

    async def broadcast_global(self, event: str, data: Dict[str, Any]) -> int:
        """Deliver to every live connection regardless of subscriptions."""
        envelope = Envelope(event, data)
        sessions = self.connections.sessions()
        results = await asyncio.gather(*(self._deliver_one(s, envelope) for s in sessions))
        sent_count = sum(results)

        self.logger.info(
            "Broadcast to all connections",
            event_name=event,
            connection_count=len(sessions),
            sent_count=sent_count
        )
        return sent_count

    async def notify_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Deliver to a user's connections without storing a snapshot."""
        topic = user_topic(user_id)
        envelope = Envelope(event, data)
        async with self._serialized(topic):
            return await self._deliver(self.registry.resolve_subscribers(topic), envelope)

    async def _deliver(self, connection_ids: Iterable[str], envelope: Envelope) -> int:
        sessions = []
        for connection_id in connection_ids:
            session = self.connections.get_connection(connection_id)
            if session is not None and not session.is_closed:
                sessions.append(session)

        if not sessions:
            return 0

        results = await asyncio.gather(*(self._deliver_one(s, envelope) for s in sessions))
        return sum(results)

    async def _deliver_one(self, session: ConnectionSession, envelope: Envelope) -> bool:
        try:
            await session.send(envelope)
        except DeliveryFailure as e:
            self.logger.warning(
                "Delivery failed",
                connection_id=session.connection_id,
                event_name=envelope.event,
                error=e.message
            )
            if self.metrics:
                self.metrics.increment_counter("delivery_failures_total", event=envelope.event)
            return False

        if self.metrics:
            self.metrics.increment_counter("messages_sent_total", event=envelope.event)
        return True

    # Typed helpers used by collectors

    async def broadcast_streamer_update(self, streamer_id: str, data: Dict[str, Any]) -> int:
        return await self.publish(
            streamer_topic(streamer_id),
            OutboundEvent.STREAMER_UPDATE.value,
            {"streamerId": streamer_id, "data": data, "timestamp": utc_timestamp()},
            self.ttls["streamer"]
        )

    async def broadcast_game_trend_update(self, game_id: str, trend_data: Dict[str, Any]) -> int:
        return await self.publish(
            game_topic(game_id),
            OutboundEvent.GAME_TREND_UPDATE.value,
            {"gameId": game_id, "data": trend_data, "timestamp": utc_timestamp()},
            self.ttls["game"]
        )

    async def broadcast_global_trends(self, trends_data: Any) -> int:
        return await self.publish(
            GLOBAL_TRENDS_TOPIC,
            OutboundEvent.GLOBAL_TRENDS_UPDATE.value,
            {"data": trends_data, "timestamp": utc_timestamp()},
            self.ttls["global_trends"]
        )

    async def broadcast_viewer_count_update(self, streamer_id: str, count: int) -> int:
        return await self.publish(
            streamer_topic(streamer_id),
            OutboundEvent.VIEWER_COUNT_UPDATE.value,
            {"streamerId": streamer_id, "count": count, "timestamp": utc_timestamp()},
            self.ttls["viewer_count"]
        )

    async def broadcast_live_status_change(
        self,
        streamer_id: str,
        is_live: bool,
        stream_data: Optional[Dict[str, Any]] = None
    ) -> int:
        return await self.publish(
            streamer_topic(streamer_id),
            OutboundEvent.LIVE_STATUS_CHANGE.value,
            {
                "streamerId": streamer_id,
                "isLive": is_live,
                "streamData": stream_data,
                "timestamp": utc_timestamp()
            },
            self.ttls["streamer"]
        )

    async def broadcast_alert(self, alert: Dict[str, Any]) -> int:
        return await self.broadcast_global(
            OutboundEvent.ALERT.value,
            {**alert, "timestamp": utc_timestamp()}
        )

    async def send_user_notification(self, user_id: str, message: str, notification_type: str = "info", **extra) -> int:
        return await self.notify_user(
            user_id,
            OutboundEvent.NOTIFICATION.value,
            {"message": message, "type": notification_type, **extra, "timestamp": utc_timestamp()}
        )
