"""
Topic registry for the Realtime Service.

The registry is the single source of truth for subscriptions. It keeps the
topic -> connections index used for fan-out and the connection -> topics
index used for cleanup, and every mutation updates both in the same call.
None of the methods await, so under the event loop each one runs to
completion before any other registry operation starts.
"""

from typing import Dict, Any, Set, FrozenSet, List

from shared.logging import get_logger


class TopicRegistry:
    """Maps topics to the set of subscribed connection IDs."""

    def __init__(self):
        self.logger = get_logger("realtime.subscriptions.registry")

        self._subscribers: Dict[str, Set[str]] = {}  # topic -> connection_ids
        self._memberships: Dict[str, Set[str]] = {}  # connection_id -> topics

    def subscribe(self, topic: str, connection_id: str) -> bool:
        """Add a connection to a topic.

        Returns False when the connection was already subscribed.
        """
        subscribers = self._subscribers.setdefault(topic, set())
        if connection_id in subscribers:
            return False

        subscribers.add(connection_id)
        self._memberships.setdefault(connection_id, set()).add(topic)

        self.logger.debug(
            "Connection subscribed to topic",
            connection_id=connection_id,
            topic=topic,
            subscriber_count=len(subscribers)
        )
        return True

    def unsubscribe(self, topic: str, connection_id: str) -> bool:
        """Remove a connection from a topic.

        Returns False when the connection was not subscribed.
        """
        subscribers = self._subscribers.get(topic)
        if not subscribers or connection_id not in subscribers:
            return False

        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[topic]

        topics = self._memberships.get(connection_id)
        if topics is not None:
            topics.discard(topic)
            if not topics:
                del self._memberships[connection_id]

        self.logger.debug(
            "Connection unsubscribed from topic",
            connection_id=connection_id,
            topic=topic
        )
        return True

    def unsubscribe_all(self, connection_id: str) -> int:
        """Remove a connection from every topic it currently belongs to."""
        topics = self._memberships.pop(connection_id, set())

        for topic in topics:
            subscribers = self._subscribers.get(topic)
            if subscribers is None:
                continue
            subscribers.discard(connection_id)
            if not subscribers:
                del self._subscribers[topic]

        if topics:
            self.logger.debug(
                "Removed connection subscriptions",
                connection_id=connection_id,
                count=len(topics)
            )
        return len(topics)

    def resolve_subscribers(self, topic: str) -> Set[str]:
        """Get connection IDs subscribed to a topic. Unknown topics resolve to an empty set."""
        return set(self._subscribers.get(topic, ()))

    def topics_for(self, connection_id: str) -> FrozenSet[str]:
        """Get topics a connection is subscribed to."""
        return frozenset(self._memberships.get(connection_id, ()))

    def is_subscribed(self, topic: str, connection_id: str) -> bool:
        return connection_id in self._subscribers.get(topic, ())

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def active_topics(self) -> List[str]:
        return sorted(self._subscribers)

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        return {
            "total_topics": len(self._subscribers),
            "total_connections": len(self._memberships),
            "total_subscriptions": sum(len(s) for s in self._subscribers.values()),
            "topics": {topic: len(s) for topic, s in sorted(self._subscribers.items())}
        }
