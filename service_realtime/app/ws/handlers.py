"""
WebSocket message handlers for the Realtime Service.
"""

import json
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from shared.logging import get_logger, set_connection_context
from shared.errors import AuthRequired, ExternalServiceError, InvalidCredential, InvalidTopic
from ..cache.snapshot_cache import SnapshotCache
from ..subscriptions.topics import GLOBAL_TRENDS_TOPIC, game_topic, parse_topic, streamer_topic
from ..telemetry.client import TelemetryClient
from .messages import Envelope, InboundEvent, InboundMessage, OutboundEvent, parse_inbound, utc_timestamp
from .session import ConnectionSession


def _error(message: str) -> Envelope:
    return Envelope(OutboundEvent.ERROR.value, {"message": message})


class WebSocketMessageHandler:
    """Dispatches inbound client frames for one service instance."""

    def __init__(
        self,
        snapshots: SnapshotCache,
        telemetry: TelemetryClient,
        on_authenticated: Optional[Callable[[ConnectionSession], Any]] = None
    ):
        self.snapshots = snapshots
        self.telemetry = telemetry
        self.on_authenticated = on_authenticated
        self.logger = get_logger("realtime.ws.handler")

        self._handlers: Dict[InboundEvent, Callable[[ConnectionSession, InboundMessage], Awaitable[Optional[Envelope]]]] = {
            InboundEvent.AUTHENTICATE: self._handle_authenticate,
            InboundEvent.SUBSCRIBE_STREAMER: self._handle_subscribe_streamer,
            InboundEvent.UNSUBSCRIBE_STREAMER: self._handle_unsubscribe_streamer,
            InboundEvent.SUBSCRIBE_GAME: self._handle_subscribe_game,
            InboundEvent.UNSUBSCRIBE_GAME: self._handle_unsubscribe_game,
            InboundEvent.SUBSCRIBE_GLOBAL_TRENDS: self._handle_subscribe_global_trends,
            InboundEvent.UNSUBSCRIBE_GLOBAL_TRENDS: self._handle_unsubscribe_global_trends,
            InboundEvent.GET_VIEWER_COUNT: self._handle_get_viewer_count,
            InboundEvent.CHECK_LIVE_STATUS: self._handle_check_live_status,
            InboundEvent.ANALYZE_CHAT: self._handle_analyze_chat,
        }

    async def handle_message(self, session: ConnectionSession, message_text: str) -> Optional[Envelope]:
        """Handle one inbound frame and return the reply frame, if any."""
        session.touch()

        try:
            message = parse_inbound(message_text)
        except json.JSONDecodeError as e:
            self.logger.warning("Invalid JSON message", connection_id=session.connection_id, error=str(e))
            return _error("Message must be valid JSON")
        except ValueError as e:
            self.logger.warning("Invalid message format", connection_id=session.connection_id, error=str(e))
            return _error(str(e))

        try:
            return await self._handlers[message.event](session, message)

        except AuthRequired as e:
            return _error(e.message)
        except InvalidTopic as e:
            return _error(e.message)
        except Exception as e:
            self.logger.error(
                "Error handling message",
                connection_id=session.connection_id,
                event_name=message.event.value,
                error=str(e),
                exc_info=True
            )
            return _error("Internal server error")

    async def _handle_authenticate(self, session: ConnectionSession, message: InboundMessage) -> Optional[Envelope]:
        return await self.authenticate(session, message.credential())

    async def authenticate(self, session: ConnectionSession, credential: Any) -> Optional[Envelope]:
        """Authenticate a session and build the reply frame."""
        try:
            identity = await session.authenticate(credential)
        except InvalidCredential as e:
            self.logger.info(
                "Authentication failed",
                connection_id=session.connection_id,
                error=e.message
            )
            return Envelope(OutboundEvent.AUTHENTICATION_ERROR.value, {"error": e.message})

        if identity is None:
            return None

        set_connection_context(session.connection_id, identity.user_id)
        if self.on_authenticated is not None:
            self.on_authenticated(session)

        return Envelope(OutboundEvent.AUTHENTICATED.value, {"success": True, **identity.to_dict()})

    async def _subscribe(self, session: ConnectionSession, topic: str) -> Optional[Envelope]:
        if not await session.subscribe(topic):
            return None
        self.logger.info("Connection subscribed", connection_id=session.connection_id, topic=topic)
        return Envelope(OutboundEvent.SUBSCRIBED.value, {"topic": topic})

    def _unsubscribe(self, session: ConnectionSession, topic: str) -> Envelope:
        session.unsubscribe(topic)
        return Envelope(OutboundEvent.UNSUBSCRIBED.value, {"topic": topic})

    def _require_auth(self, session: ConnectionSession):
        # Checked before the topic is built so anonymous clients get
        # AuthRequired rather than InvalidTopic for a malformed id
        if not session.is_authenticated:
            raise AuthRequired()

    async def _handle_subscribe_streamer(self, session, message):
        self._require_auth(session)
        return await self._subscribe(session, streamer_topic(message.entity_id()))

    async def _handle_unsubscribe_streamer(self, session, message):
        return self._unsubscribe(session, streamer_topic(message.entity_id()))

    async def _handle_subscribe_game(self, session, message):
        self._require_auth(session)
        return await self._subscribe(session, game_topic(message.entity_id()))

    async def _handle_unsubscribe_game(self, session, message):
        return self._unsubscribe(session, game_topic(message.entity_id()))

    async def _handle_subscribe_global_trends(self, session, message):
        self._require_auth(session)
        return await self._subscribe(session, GLOBAL_TRENDS_TOPIC)

    async def _handle_unsubscribe_global_trends(self, session, message):
        return self._unsubscribe(session, GLOBAL_TRENDS_TOPIC)

    def _streamer(self, message: InboundMessage) -> Tuple[str, str]:
        topic = streamer_topic(message.entity_id())
        return topic, parse_topic(topic).entity_id

    def _cached_update(self, topic: str, event: OutboundEvent) -> Optional[Dict[str, Any]]:
        envelope = self.snapshots.read(topic)
        if isinstance(envelope, Envelope) and envelope.event == event.value:
            return envelope.data
        return None

    async def _handle_get_viewer_count(self, session, message):
        topic, streamer_id = self._streamer(message)

        cached = self._cached_update(topic, OutboundEvent.VIEWER_COUNT_UPDATE)
        if cached is not None:
            return Envelope(OutboundEvent.VIEWER_COUNT_UPDATE.value, cached)

        try:
            count = await self.telemetry.get_viewer_count(streamer_id)
        except ExternalServiceError as e:
            self.logger.warning("Viewer count lookup failed", streamer_id=streamer_id, error=e.message)
            return _error("Failed to get viewer count")

        return Envelope(OutboundEvent.VIEWER_COUNT_UPDATE.value, {
            "streamerId": streamer_id,
            "count": count,
            "timestamp": utc_timestamp()
        })

    async def _handle_check_live_status(self, session, message):
        topic, streamer_id = self._streamer(message)

        cached = self._cached_update(topic, OutboundEvent.LIVE_STATUS_CHANGE)
        if cached is not None:
            return Envelope(OutboundEvent.LIVE_STATUS_CHANGE.value, cached)

        try:
            status = await self.telemetry.is_stream_live(streamer_id)
        except ExternalServiceError as e:
            self.logger.warning("Live status lookup failed", streamer_id=streamer_id, error=e.message)
            return _error("Failed to check live status")

        return Envelope(OutboundEvent.LIVE_STATUS_CHANGE.value, {
            "streamerId": streamer_id,
            "isLive": status["isLive"],
            "streamData": status.get("streamData"),
            "timestamp": utc_timestamp()
        })

    async def _handle_analyze_chat(self, session, message):
        self._require_auth(session)

        _, streamer_id = self._streamer(message)

        try:
            analysis = await self.telemetry.analyze_chat(streamer_id)
        except ExternalServiceError as e:
            self.logger.warning("Chat analysis failed", streamer_id=streamer_id, error=e.message)
            return _error("Failed to analyze chat")

        return Envelope(OutboundEvent.CHAT_ANALYSIS.value, {
            "streamerId": streamer_id,
            "analysis": analysis,
            "timestamp": utc_timestamp()
        })
