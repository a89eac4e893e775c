"""
Fan-out of chat events to live WebSocket sessions.

Each live session owns a bounded outbound queue drained by its connection's
writer task. Publishing never waits on a slow connection: when a queue is
full the oldest droppable event (typing, ping) is discarded, and when only
critical events are queued the session is closed and told to resync.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from app.core.config import settings
from app.core.exceptions import ChatNotFound, ValidationError
from app.core.ids import new_id, utcnow
from app.core.logging import delivery_logger, event_fields
from app.core.monitoring import live_sessions_active, record_event, record_session_disconnect
from app.schemas.events import DROPPABLE_EVENTS, ORIGIN_EXCLUDED_EVENTS, EventType, WsOutbound
from app.services.locks import KeyedLocks

AccessCheck = Callable[[str, str], bool]

# How many delivered message ids a session remembers for de-duplication
SEEN_KEYS_LIMIT = 1024


@dataclass
class RealtimeEvent:
    type: EventType
    chat_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    origin_session_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def droppable(self) -> bool:
        return self.type in DROPPABLE_EVENTS

    def to_wire(self) -> Dict[str, Any]:
        return WsOutbound(
            type=self.type,
            chat_id=self.chat_id,
            data=self.data,
            request_id=self.request_id,
        ).model_dump(mode="json", exclude_none=True)


class OfferResult(str, Enum):
    QUEUED = "queued"
    DROPPED = "dropped"
    DUPLICATE = "duplicate"
    OVERFLOW = "overflow"
    CLOSED = "closed"


class LiveSession:
    """An authenticated connection and the chats it listens to"""

    def __init__(self, user_id: str, device_id: str, max_queue: int, clock: Callable[[], float] = time.monotonic):
        self.id = new_id("ls")
        self.user_id = user_id
        self.device_id = device_id
        self.chats: Set[str] = set()
        self.connected_at = utcnow()
        self.closed = False
        self.close_reason: Optional[str] = None
        self._clock = clock
        self.last_seen = clock()
        self._max_queue = max_queue
        self._queue: Deque[RealtimeEvent] = deque()
        self._ready = asyncio.Event()
        self._seen_order: Deque[str] = deque()
        self._seen: Set[str] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def touch(self) -> None:
        self.last_seen = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_seen

    def offer(self, event: RealtimeEvent) -> OfferResult:
        if self.closed:
            return OfferResult.CLOSED
        if event.dedupe_key and event.dedupe_key in self._seen:
            return OfferResult.DUPLICATE

        if len(self._queue) >= self._max_queue:
            victim = next((queued for queued in self._queue if queued.droppable), None)
            if victim is not None:
                self._queue.remove(victim)
                record_event(victim.type.value, "dropped")
            elif event.droppable:
                return OfferResult.DROPPED
            else:
                return OfferResult.OVERFLOW

        self._queue.append(event)
        self._remember(event.dedupe_key)
        self._ready.set()
        return OfferResult.QUEUED

    async def next_event(self) -> Optional[RealtimeEvent]:
        """Next event to write, or None once the session is closed and drained"""
        while not self._queue:
            if self.closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._queue.popleft()

    def close(self, reason: str, notice: Optional[RealtimeEvent] = None) -> None:
        """Stop accepting events. A notice replaces whatever was still queued."""
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        if notice is not None:
            self._queue.clear()
            self._queue.append(notice)
        self._ready.set()

    def _remember(self, key: Optional[str]) -> None:
        if not key:
            return
        self._seen.add(key)
        self._seen_order.append(key)
        if len(self._seen_order) > SEEN_KEYS_LIMIT:
            self._seen.discard(self._seen_order.popleft())


class DeliveryRouter:
    def __init__(
        self,
        queue_size: Optional[int] = None,
        access_check: Optional[AccessCheck] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue_size = queue_size or settings.session_queue_size
        self.access_check = access_check
        self._clock = clock
        self._sessions: Dict[str, LiveSession] = {}
        self._subscribers: Dict[str, Set[str]] = {}
        self._locks = KeyedLocks()

    def register(self, user_id: str, device_id: str) -> LiveSession:
        session = LiveSession(user_id, device_id, self.queue_size, clock=self._clock)
        self._sessions[session.id] = session
        live_sessions_active.inc()
        delivery_logger.info("Live session registered", session_id=session.id, user_id=user_id, device_id=device_id)
        return session

    def get_session(self, session_id: str) -> Optional[LiveSession]:
        return self._sessions.get(session_id)

    def subscribe(self, session_id: str, chat_id: str) -> None:
        session = self._require_session(session_id)
        if self.access_check is not None and not self.access_check(session.user_id, chat_id):
            raise ChatNotFound(chat_id)
        self._subscribers.setdefault(chat_id, set()).add(session_id)
        session.chats.add(chat_id)

    def unsubscribe(self, session_id: str, chat_id: str) -> None:
        subscribers = self._subscribers.get(chat_id)
        if subscribers is not None:
            subscribers.discard(session_id)
            if not subscribers:
                del self._subscribers[chat_id]
        session = self._sessions.get(session_id)
        if session is not None:
            session.chats.discard(chat_id)

    def disconnect(self, session_id: str, reason: str = "client_closed") -> None:
        """Forget a session and every subscription it held"""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        for chat_id in list(session.chats):
            self.unsubscribe(session_id, chat_id)
        session.close(reason)
        live_sessions_active.dec()
        delivery_logger.info("Live session removed", session_id=session_id, reason=reason)

    def subscribers(self, chat_id: str) -> Set[str]:
        return set(self._subscribers.get(chat_id, set()))

    def sessions_for_user(self, user_id: str) -> List[LiveSession]:
        return [session for session in self._sessions.values() if session.user_id == user_id]

    def close_chat(self, chat_id: str) -> None:
        """Drop all subscriptions to a chat that no longer exists"""
        for session_id in self.subscribers(chat_id):
            self.unsubscribe(session_id, chat_id)

    async def publish(self, chat_id: str, event: RealtimeEvent) -> int:
        """Offer ``event`` to every subscriber of the chat; returns how many queued it"""
        async with self._locks.hold(chat_id):
            delivered = 0
            for session_id in sorted(self.subscribers(chat_id)):
                if event.type in ORIGIN_EXCLUDED_EVENTS and session_id == event.origin_session_id:
                    continue
                if self._offer(session_id, event):
                    delivered += 1
            return delivered

    def send_to_session(self, session_id: str, event: RealtimeEvent) -> bool:
        """Direct delivery (acks, errors) to one session"""
        return self._offer(session_id, event)

    def reap_stale(self, max_idle: float) -> List[LiveSession]:
        """Close sessions that have not been heard from in ``max_idle`` seconds"""
        stale = [session for session in self._sessions.values() if session.idle_for() > max_idle]
        for session in stale:
            delivery_logger.warning("Reaping idle live session", session_id=session.id, idle=session.idle_for())
            record_session_disconnect("heartbeat_timeout")
            self.disconnect(session.id, reason="heartbeat_timeout")
        return stale

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "chats": len(self._subscribers),
            "queued_events": sum(session.pending for session in self._sessions.values()),
        }

    def _offer(self, session_id: str, event: RealtimeEvent) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False

        result = session.offer(event)
        if result == OfferResult.QUEUED:
            record_event(event.type.value, "queued")
            return True
        if result == OfferResult.OVERFLOW:
            self._force_resync(session, event)
            return False

        record_event(event.type.value, result.value)
        return False

    def _force_resync(self, session: LiveSession, event: RealtimeEvent) -> None:
        delivery_logger.warning(
            "Live session fell behind, forcing resync",
            session_id=session.id,
            **event_fields(event.type.value, event.chat_id or "", queued=session.pending),
        )
        record_event(event.type.value, "overflow")
        record_session_disconnect("resync_required")
        notice = RealtimeEvent(
            type=EventType.RESYNC_REQUIRED,
            data={"reason": "outbound queue overflow", "chats": sorted(session.chats)},
        )
        session.close("resync_required", notice=notice)
        self.disconnect(session.id, reason="resync_required")

    def _require_session(self, session_id: str) -> LiveSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValidationError("Unknown live session", details={"session_id": session_id})
        return session


def new_message_event(message: Dict[str, Any], origin_session_id: Optional[str] = None) -> RealtimeEvent:
    return RealtimeEvent(
        type=EventType.NEW_MESSAGE,
        chat_id=message["chat_id"],
        data={"message": message},
        origin_session_id=origin_session_id,
        dedupe_key=f"message.new:{message['id']}",
    )


def status_event(chat_id: str, message_id: str, status: str, origin_session_id: Optional[str] = None) -> RealtimeEvent:
    return RealtimeEvent(
        type=EventType.STATUS_UPDATE,
        chat_id=chat_id,
        data={"message_id": message_id, "status": status},
        origin_session_id=origin_session_id,
    )


def typing_event(chat_id: str, is_typing: bool, actor: str, origin_session_id: Optional[str] = None) -> RealtimeEvent:
    return RealtimeEvent(
        type=EventType.TYPING,
        chat_id=chat_id,
        data={"is_typing": is_typing, "actor": actor},
        origin_session_id=origin_session_id,
    )


def error_event(
    code: str,
    detail: str,
    chat_id: Optional[str] = None,
    request_id: Optional[str] = None,
    **extra: Any,
) -> RealtimeEvent:
    data = {"code": code, "detail": detail}
    data.update({key: value for key, value in extra.items() if value is not None})
    return RealtimeEvent(type=EventType.ERROR, chat_id=chat_id, data=data, request_id=request_id)
