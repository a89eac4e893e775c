"""WebSocket envelopes and event types."""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class EventType(str, Enum):
    # Server -> client
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    CHAT_CREATED = "chat.created"
    CHAT_UPDATED = "chat.updated"
    CHAT_DELETED = "chat.deleted"
    MESSAGE_ACK = "message.ack"
    NEW_MESSAGE = "message.new"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    STATUS_UPDATE = "message.status"
    REACTION_UPDATE = "reaction.update"
    TYPING = "typing"
    BOT_CHUNK = "bot.chunk"
    ERROR = "error"
    RESYNC_REQUIRED = "resync_required"
    PING = "ping"
    PONG = "pong"


class InboundType(str, Enum):
    # Client -> server
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    CHAT_CREATE = "chat.create"
    MESSAGE_SEND = "message.send"
    MESSAGE_STATUS = "message.status"
    REACTION = "reaction"
    TYPING = "typing"
    GENERATION_STOP = "generation.stop"
    PING = "ping"
    PONG = "pong"


# Events that may be discarded when a session falls behind
DROPPABLE_EVENTS = frozenset({EventType.TYPING, EventType.PING, EventType.PONG})

# Events never echoed back to the session that caused them
ORIGIN_EXCLUDED_EVENTS = frozenset({EventType.STATUS_UPDATE, EventType.TYPING})


class WsInbound(BaseModel):
    """Client -> Server."""

    type: InboundType
    data: Dict[str, Any] = {}
    request_id: Optional[str] = None


class WsOutbound(BaseModel):
    """Server -> Client."""

    type: EventType
    chat_id: Optional[str] = None
    data: Dict[str, Any] = {}
    request_id: Optional[str] = None
