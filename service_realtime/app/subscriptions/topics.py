"""
Topic identifiers for the Realtime Service.

Grammar:

    streamer:<streamerId>
    game:<gameId>
    global_trends
    user:<userId>        (implicit, joined on authentication)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.errors import InvalidTopic


class TopicKind(str, Enum):
    """Kinds of broadcastable entity streams."""
    STREAMER = "streamer"
    GAME = "game"
    GLOBAL_TRENDS = "global_trends"
    USER = "user"


GLOBAL_TRENDS_TOPIC = TopicKind.GLOBAL_TRENDS.value

_ENTITY_ID = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")
_KEYED_KINDS = {TopicKind.STREAMER, TopicKind.GAME, TopicKind.USER}


@dataclass(frozen=True)
class Topic:
    """Parsed topic identifier."""
    kind: TopicKind
    entity_id: Optional[str] = None

    def __str__(self) -> str:
        if self.entity_id is None:
            return self.kind.value
        return f"{self.kind.value}:{self.entity_id}"

    @property
    def is_personal(self) -> bool:
        return self.kind is TopicKind.USER


def _entity(kind: TopicKind, entity_id) -> Topic:
    entity_id = str(entity_id).strip() if entity_id is not None else ""
    if not _ENTITY_ID.match(entity_id):
        raise InvalidTopic(f"{kind.value}:{entity_id}")
    return Topic(kind, entity_id)


def streamer_topic(streamer_id) -> str:
    return str(_entity(TopicKind.STREAMER, streamer_id))


def game_topic(game_id) -> str:
    return str(_entity(TopicKind.GAME, game_id))


def user_topic(user_id) -> str:
    return str(_entity(TopicKind.USER, user_id))


def parse_topic(topic: str) -> Topic:
    """Parse and validate a topic identifier.

    Raises InvalidTopic when the string does not follow the grammar.
    """
    if not isinstance(topic, str) or not topic:
        raise InvalidTopic(str(topic))

    if topic == GLOBAL_TRENDS_TOPIC:
        return Topic(TopicKind.GLOBAL_TRENDS)

    prefix, sep, entity_id = topic.partition(":")
    if not sep:
        raise InvalidTopic(topic)

    try:
        kind = TopicKind(prefix)
    except ValueError:
        raise InvalidTopic(topic)

    if kind not in _KEYED_KINDS or not _ENTITY_ID.match(entity_id):
        raise InvalidTopic(topic)

    return Topic(kind, entity_id)


def is_valid_topic(topic: str) -> bool:
    try:
        parse_topic(topic)
    except InvalidTopic:
        return False
    return True
