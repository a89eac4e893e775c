"""
Bot reply state machine.

One task per in-flight reply drives it through
``pending -> generating -> streaming -> complete``. Chunks are published as
they arrive but only the finished text is persisted, so a failure never
leaves a partial bot message behind. An explicit stop keeps what was
buffered, flagged as truncated.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, ContextManager, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import GenerationError, GenerationInProgress, GenerationTimeout, InvalidStateTransition
from app.core.ids import new_id
from app.core.logging import streaming_logger
from app.core.monitoring import record_generation
from app.crud import message as message_crud
from app.database.connection import DatabaseSession
from app.models.chat import Chat
from app.models.enums import MessageRole
from app.schemas.events import EventType
from app.services.delivery_router import DeliveryRouter, RealtimeEvent, error_event, new_message_event, typing_event
from app.services.generation import ChatTurn, GenerationProvider
from app.services.locks import KeyedLocks
from app.services.notifications import LoggingNotificationPublisher, NotificationPublisher

SessionFactory = Callable[[], ContextManager[Session]]


class StreamState(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    StreamState.PENDING: {StreamState.GENERATING, StreamState.FAILED},
    StreamState.GENERATING: {StreamState.STREAMING, StreamState.FAILED, StreamState.CANCELLED},
    StreamState.STREAMING: {StreamState.COMPLETE, StreamState.FAILED, StreamState.CANCELLED},
    StreamState.COMPLETE: set(),
    StreamState.FAILED: set(),
    StreamState.CANCELLED: set(),
}

TERMINAL_STATES = frozenset({StreamState.COMPLETE, StreamState.FAILED, StreamState.CANCELLED})


@dataclass
class BotReply:
    chat_id: str
    user_id: str
    prompt: str
    trigger_message_id: str
    correlation_id: Optional[str] = None
    stream_id: str = field(default_factory=lambda: new_id("stream"))
    state: StreamState = StreamState.PENDING
    chunks: List[str] = field(default_factory=list)
    message_id: Optional[str] = None
    error: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: StreamState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, new_state.value)
        self.state = new_state


class BotResponseStreamer:
    def __init__(
        self,
        router: DeliveryRouter,
        provider: GenerationProvider,
        chat_locks: KeyedLocks,
        session_factory: Optional[SessionFactory] = None,
        notifier: Optional[NotificationPublisher] = None,
        timeout: Optional[float] = None,
    ):
        self.router = router
        self.provider = provider
        self.chat_locks = chat_locks
        self.session_factory = session_factory or partial(DatabaseSession, "bot_reply")
        self.notifier = notifier or LoggingNotificationPublisher()
        self.timeout = timeout or settings.generation_timeout_seconds
        self._active: Dict[str, BotReply] = {}

    def start(
        self,
        chat_id: str,
        user_id: str,
        prompt: str,
        trigger_message_id: str,
        correlation_id: Optional[str] = None,
    ) -> BotReply:
        """Begin a reply to ``trigger_message_id``; one reply per chat at a time"""
        if self.is_active(chat_id):
            raise GenerationInProgress(
                "A bot reply is already being generated for this chat",
                details={"chat_id": chat_id},
            )

        reply = BotReply(
            chat_id=chat_id,
            user_id=user_id,
            prompt=prompt,
            trigger_message_id=trigger_message_id,
            correlation_id=correlation_id,
        )
        reply.transition(StreamState.GENERATING)
        reply.task = asyncio.create_task(self._run(reply), name=f"bot-reply-{chat_id}")
        reply.task.add_done_callback(partial(self._finished, reply))
        self._active[chat_id] = reply

        streaming_logger.info("Bot reply started", chat_id=chat_id, stream_id=reply.stream_id)
        return reply

    def is_active(self, chat_id: str) -> bool:
        reply = self._active.get(chat_id)
        return reply is not None and not reply.is_terminal

    def active_reply(self, chat_id: str) -> Optional[BotReply]:
        return self._active.get(chat_id)

    async def stop(self, chat_id: str) -> bool:
        """Cancel the chat's in-flight reply; True if one was cancelled"""
        reply = self._active.get(chat_id)
        if reply is None or reply.is_terminal or reply.task is None:
            return False
        reply.task.cancel()
        await asyncio.wait([reply.task])
        return reply.state == StreamState.CANCELLED

    async def drain(self) -> None:
        """Wait for every in-flight reply to finish, then for its notifications"""
        while self._active:
            tasks = [reply.task for reply in self._active.values() if reply.task is not None]
            if not tasks:
                break
            await asyncio.wait(tasks)
        notifier_drain = getattr(self.notifier, "drain", None)
        if notifier_drain is not None:
            await notifier_drain()

    async def _run(self, reply: BotReply) -> None:
        try:
            await self.router.publish(reply.chat_id, typing_event(reply.chat_id, True, actor="bot"))
            await self._generate(reply)
            if not reply.chunks:
                raise GenerationError("Generation produced an empty reply")
            await self._persist(reply, truncated=False)
            reply.transition(StreamState.COMPLETE)
            await self._announce(reply)
            record_generation("complete", time.monotonic() - reply.started_at)
        except asyncio.CancelledError:
            await self._cancelled(reply)
            raise
        except Exception as e:
            await self._failed(reply, e)

    async def _generate(self, reply: BotReply) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        stream = self.provider.stream(self._load_history(reply.chat_id), reply.prompt).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationTimeout(f"Generation exceeded {self.timeout} seconds")
                try:
                    chunk = await asyncio.wait_for(stream.__anext__(), remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    raise GenerationTimeout(f"Generation exceeded {self.timeout} seconds")

                if not chunk:
                    continue
                if reply.state == StreamState.GENERATING:
                    reply.transition(StreamState.STREAMING)
                index = len(reply.chunks)
                reply.chunks.append(chunk)
                await self.router.publish(reply.chat_id, self._chunk_event(reply, index, chunk))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _load_history(self, chat_id: str) -> List[ChatTurn]:
        with self.session_factory() as db:
            rows = message_crud.recent_messages(db, chat_id, settings.generation_context_messages)
            return [ChatTurn(role=row.role, content=row.content) for row in rows]

    async def _persist(self, reply: BotReply, truncated: bool) -> None:
        """Store the buffer as one bot message, then announce it in order"""
        async with self.chat_locks.hold(reply.chat_id):
            with self.session_factory() as db:
                chat = db.query(Chat).filter(Chat.id == reply.chat_id, Chat.deleted_at.is_(None)).first()
                if chat is None:
                    raise GenerationError("Chat was deleted during generation", details={"chat_id": reply.chat_id})
                message = message_crud.append_message(
                    db,
                    chat,
                    MessageRole.bot,
                    reply.text,
                    reply_to_id=reply.trigger_message_id,
                    is_truncated=truncated,
                )
                payload = message_crud.serialize_message(message)
            reply.message_id = payload["id"]

            final = self._chunk_event(reply, len(reply.chunks), "", done=True)
            final.data["message_id"] = reply.message_id
            final.data["is_truncated"] = truncated
            await self.router.publish(reply.chat_id, final)
            await self.router.publish(reply.chat_id, new_message_event(payload))

        if not self.router.sessions_for_user(reply.user_id):
            self.notifier.notify_new_message(reply.user_id, reply.chat_id, payload)

    async def _announce(self, reply: BotReply) -> None:
        await self.router.publish(reply.chat_id, typing_event(reply.chat_id, False, actor="bot"))
        streaming_logger.info(
            "Bot reply complete",
            chat_id=reply.chat_id,
            stream_id=reply.stream_id,
            message_id=reply.message_id,
            chunks=len(reply.chunks),
        )

    async def _failed(self, reply: BotReply, error: Exception) -> None:
        if reply.is_terminal:
            streaming_logger.error("Bot reply errored after finishing", chat_id=reply.chat_id, error=str(error))
            return
        reply.error = str(error)
        reply.transition(StreamState.FAILED)
        streaming_logger.warning(
            "Bot reply failed",
            chat_id=reply.chat_id,
            stream_id=reply.stream_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        record_generation(
            "timeout" if isinstance(error, GenerationTimeout) else "failed",
            time.monotonic() - reply.started_at,
        )
        await self.router.publish(reply.chat_id, typing_event(reply.chat_id, False, actor="bot"))
        await self.router.publish(
            reply.chat_id,
            error_event(
                GenerationError.code,
                "Bot reply could not be generated",
                chat_id=reply.chat_id,
                message_id=reply.trigger_message_id,
                correlation_id=reply.correlation_id,
                stream_id=reply.stream_id,
                reason="timeout" if isinstance(error, GenerationTimeout) else "error",
            ),
        )

    async def _cancelled(self, reply: BotReply) -> None:
        if reply.is_terminal:
            return
        reply.transition(StreamState.CANCELLED)
        # Already stored if the stop landed while the final message was being announced
        if reply.chunks and reply.message_id is None:
            try:
                await self._persist(reply, truncated=True)
            except GenerationError as e:
                streaming_logger.warning("Truncated bot reply not stored", chat_id=reply.chat_id, error=str(e))
        await self._announce(reply)
        record_generation("cancelled", time.monotonic() - reply.started_at)

    def _chunk_event(self, reply: BotReply, index: int, chunk: str, done: bool = False) -> RealtimeEvent:
        return RealtimeEvent(
            type=EventType.BOT_CHUNK,
            chat_id=reply.chat_id,
            data={
                "stream_id": reply.stream_id,
                "reply_to": reply.trigger_message_id,
                "index": index,
                "chunk": chunk,
                "done": done,
            },
        )

    def _finished(self, reply: BotReply, task: asyncio.Task) -> None:
        if self._active.get(reply.chat_id) is reply:
            del self._active[reply.chat_id]
        if task.cancelled() and not reply.is_terminal:
            # Cancelled before the task got to run; nothing was generated
            reply.transition(StreamState.CANCELLED)
            record_generation("cancelled", time.monotonic() - reply.started_at)
        elif not task.cancelled() and task.exception() is not None:
            streaming_logger.error("Bot reply task crashed", chat_id=reply.chat_id, error=str(task.exception()))
