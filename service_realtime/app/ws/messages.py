"""
Wire messages for the Realtime Service WebSocket protocol.

Every frame, in both directions, is a JSON object:

    {"event": "<name>", "data": <payload>}
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class InboundEvent(str, Enum):
    """Client -> server events."""
    AUTHENTICATE = "authenticate"
    SUBSCRIBE_STREAMER = "subscribe_streamer"
    UNSUBSCRIBE_STREAMER = "unsubscribe_streamer"
    SUBSCRIBE_GAME = "subscribe_game"
    UNSUBSCRIBE_GAME = "unsubscribe_game"
    SUBSCRIBE_GLOBAL_TRENDS = "subscribe_global_trends"
    UNSUBSCRIBE_GLOBAL_TRENDS = "unsubscribe_global_trends"
    GET_VIEWER_COUNT = "get_viewer_count"
    CHECK_LIVE_STATUS = "check_live_status"
    ANALYZE_CHAT = "analyze_chat"


class OutboundEvent(str, Enum):
    """Server -> client events."""
    AUTHENTICATED = "authenticated"
    AUTHENTICATION_ERROR = "authentication_error"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    STREAMER_UPDATE = "streamer_update"
    GAME_TREND_UPDATE = "game_trend_update"
    GLOBAL_TRENDS_UPDATE = "global_trends_update"
    VIEWER_COUNT_UPDATE = "viewer_count_update"
    LIVE_STATUS_CHANGE = "live_status_change"
    ALERT = "alert"
    NOTIFICATION = "notification"
    CHAT_ANALYSIS = "chat_analysis"
    ERROR = "error"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used on every update payload."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Envelope:
    """One outbound frame."""
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass(frozen=True)
class InboundMessage:
    """Decoded client frame."""
    event: InboundEvent
    data: Any = None

    def entity_id(self) -> Any:
        """Entity id carried either bare or as {"id": ...}."""
        if isinstance(self.data, dict):
            return self.data.get("id")
        return self.data

    def credential(self) -> Any:
        """Credential carried either bare or as {"token": ...}."""
        if isinstance(self.data, dict):
            return self.data.get("token") or self.data.get("credential")
        return self.data


def parse_inbound(message_text: str) -> InboundMessage:
    """Decode a client frame.

    Raises ValueError (json.JSONDecodeError included) for malformed frames.
    """
    message_data = json.loads(message_text)

    if not isinstance(message_data, dict):
        raise ValueError("Message must be a JSON object")

    event = message_data.get("event")
    if not event:
        raise ValueError("Message must have 'event' field")

    try:
        kind = InboundEvent(event)
    except ValueError:
        raise ValueError(f"Unknown event: {event}")

    return InboundMessage(event=kind, data=message_data.get("data"))
