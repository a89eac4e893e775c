"""
Chat and message operations shared by the REST routes, the WebSocket
gateway and the offline sync endpoint.

Each mutation commits before anything is published, and appends to one chat
hold that chat's lock across commit and publish so subscribers see
``message.new`` in sequence order.
"""

from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ChatNotFound, GenerationInProgress, ValidationError
from app.core.logging import chat_logger
from app.crud import chat as chat_crud
from app.crud import folder as folder_crud
from app.crud import message as message_crud
from app.crud.sync import record_receipt
from app.database.connection import DatabaseSession, transaction
from app.models.chat import Chat
from app.models.enums import MessageRole, MessageStatus, OperationKind
from app.models.folder import Folder
from app.models.message import Message
from app.schemas.chat import ChatCreate, ChatUpdate, MessageCreate
from app.schemas.events import EventType
from app.services.bot_streamer import BotResponseStreamer, SessionFactory
from app.services.delivery_router import (
    DeliveryRouter, LiveSession, RealtimeEvent, error_event, new_message_event, status_event, typing_event
)
from app.services.generation import GenerationProvider, LangChainGenerationProvider
from app.services.locks import KeyedLocks
from app.services.notifications import NotificationPublisher, create_notification_publisher

TAG_MAX_LENGTH = 50


@dataclass
class CreateChatResult:
    chat: Chat
    message: Optional[Message] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat": chat_crud.serialize_chat(self.chat),
            "message": message_crud.serialize_message(self.message) if self.message is not None else None,
        }


@dataclass
class SendResult:
    message: Message
    duplicate: bool = False
    bot_reply_started: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"message": message_crud.serialize_message(self.message), "duplicate": self.duplicate}


class ChatService:
    def __init__(
        self,
        router: DeliveryRouter,
        streamer: BotResponseStreamer,
        chat_locks: KeyedLocks,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.router = router
        self.streamer = streamer
        self.chat_locks = chat_locks
        self.session_factory = session_factory or partial(DatabaseSession, "realtime")

    # Chats

    async def create_chat(
        self,
        db: Session,
        user_id: str,
        data: ChatCreate,
        origin_session_id: Optional[str] = None,
        receipt_id: Optional[str] = None,
    ) -> CreateChatResult:
        """Create a chat, together with its first message when one is given"""
        if data.correlation_id:
            existing = chat_crud.get_chat_by_correlation(db, user_id, data.correlation_id)
            if existing is not None:
                first = message_crud.list_messages(db, existing.id, limit=1, order="asc")[0]
                return CreateChatResult(existing, first[0] if first else None, duplicate=True)

        title = self._clean_title(data.title) if data.title is not None else settings.default_chat_title
        tags = self._clean_tags(data.tags)
        if data.folder_id:
            folder_crud.require_folder(db, data.folder_id, user_id)
        initial = data.initial_message
        if initial is not None:
            self._check_content(initial.content)

        with transaction(db, "create_chat"):
            chat = chat_crud.create_chat(
                db,
                user_id,
                title,
                folder_id=data.folder_id,
                tags=tags,
                metadata=data.metadata,
                correlation_id=data.correlation_id,
            )
            message = None
            if initial is not None:
                message = message_crud.append_message(
                    db,
                    chat,
                    MessageRole.user,
                    initial.content,
                    content_type=initial.content_type,
                    correlation_id=initial.correlation_id,
                )
            result = CreateChatResult(chat, message)
            if receipt_id:
                record_receipt(db, user_id, receipt_id, OperationKind.create_chat.value, result.to_dict())

        chat_logger.info("Chat created", chat_id=chat.id, user_id=user_id, with_message=message is not None)
        payload = result.to_dict()
        for session in self.router.sessions_for_user(user_id):
            if session.id == origin_session_id:
                continue
            self.router.send_to_session(
                session.id,
                RealtimeEvent(type=EventType.CHAT_CREATED, chat_id=chat.id, data=payload),
            )

        if message is not None and initial.request_bot_reply:
            await self._start_bot_reply(chat.id, message, user_id)
        return result

    def list_chats(
        self,
        db: Session,
        user_id: str,
        folder_id: Optional[str] = None,
        tag: Optional[str] = None,
        is_favorite: Optional[bool] = None,
        is_archived: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Chat], int]:
        return chat_crud.get_user_chats(
            db,
            user_id,
            folder_id=folder_id,
            tag=tag,
            is_favorite=is_favorite,
            is_archived=is_archived,
            limit=self._clamp(limit),
            offset=offset,
        )

    def get_chat(self, db: Session, user_id: str, chat_id: str, message_limit: int = 50) -> Tuple[Chat, List[Message]]:
        """A chat with its latest messages, oldest first"""
        chat = chat_crud.require_chat(db, chat_id, user_id)
        return chat, message_crud.recent_messages(db, chat_id, self._clamp(message_limit))

    async def update_chat(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        update: ChatUpdate,
        origin_session_id: Optional[str] = None,
        receipt_id: Optional[str] = None,
    ) -> Chat:
        changes = update.model_dump(exclude_unset=True, exclude={"version"})
        for field in ("title", "tags", "metadata", "is_favorite", "is_archived"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"'{field}' cannot be null")
        if "title" in changes:
            changes["title"] = self._clean_title(changes["title"])
        if "tags" in changes:
            changes["tags"] = self._clean_tags(changes["tags"])
        if changes.get("folder_id"):
            folder_crud.require_folder(db, changes["folder_id"], user_id)

        async with self.chat_locks.hold(chat_id):
            with transaction(db, "update_chat"):
                chat = chat_crud.require_chat(db, chat_id, user_id, for_update=True)
                changed = chat_crud.update_chat(db, chat, changes, update.version)
                if receipt_id:
                    record_receipt(
                        db, user_id, receipt_id, OperationKind.update_chat.value,
                        {"chat": chat_crud.serialize_chat(chat)},
                    )

            if changed:
                chat_logger.info("Chat updated", chat_id=chat_id, fields=changed, version=chat.version)
                await self.router.publish(
                    chat_id,
                    RealtimeEvent(
                        type=EventType.CHAT_UPDATED,
                        chat_id=chat_id,
                        data={"chat": chat_crud.serialize_chat(chat), "changed_fields": changed},
                        origin_session_id=origin_session_id,
                    ),
                )
        return chat

    async def delete_chat(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        confirm: bool = False,
        hard: bool = False,
        receipt_id: Optional[str] = None,
    ) -> int:
        """Delete a chat and its messages; returns the number of messages removed"""
        if not confirm:
            raise ValidationError("Chat deletion must be confirmed")
        chat_crud.require_chat(db, chat_id, user_id)

        await self.streamer.stop(chat_id)

        async with self.chat_locks.hold(chat_id):
            with transaction(db, "delete_chat"):
                chat = chat_crud.require_chat(db, chat_id, user_id, for_update=True)
                deleted_count = chat_crud.delete_chat(db, chat, hard=hard)
                if receipt_id:
                    record_receipt(
                        db, user_id, receipt_id, OperationKind.delete_chat.value,
                        {"chat_id": chat_id, "deleted_message_count": deleted_count},
                    )

            chat_logger.info("Chat deleted", chat_id=chat_id, hard=hard, messages=deleted_count)
            event = RealtimeEvent(type=EventType.CHAT_DELETED, chat_id=chat_id, data={"chat_id": chat_id})
            notified = set()
            for session_id in self.router.subscribers(chat_id):
                self.router.send_to_session(session_id, event)
                notified.add(session_id)
            for session in self.router.sessions_for_user(user_id):
                if session.id not in notified:
                    self.router.send_to_session(session.id, event)
            self.router.close_chat(chat_id)
        return deleted_count

    def search(
        self,
        db: Session,
        user_id: str,
        query: str,
        folder_id: Optional[str] = None,
        tag: Optional[str] = None,
        is_favorite: Optional[bool] = None,
        is_archived: Optional[bool] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            raise ValidationError("Search query cannot be empty")
        return chat_crud.search_chats(
            db,
            user_id,
            query,
            folder_id=folder_id,
            tag=tag,
            is_favorite=is_favorite,
            is_archived=is_archived,
            limit=self._clamp(limit),
        )

    # Messages

    def list_messages(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        limit: int = 50,
        offset: int = 0,
        before: Optional[str] = None,
        after: Optional[str] = None,
        order: str = "desc",
        include_deleted: bool = False,
    ) -> Tuple[List[Message], bool, Optional[str]]:
        """One page of messages plus the cursor for the next page"""
        chat_crud.require_chat(db, chat_id, user_id)
        rows, has_more = message_crud.list_messages(
            db,
            chat_id,
            limit=self._clamp(limit),
            offset=offset,
            before=before,
            after=after,
            order=order,
            include_deleted=include_deleted,
        )
        next_cursor = rows[-1].id if has_more and rows else None
        return rows, has_more, next_cursor

    async def send_message(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        data: MessageCreate,
        origin_session_id: Optional[str] = None,
        receipt_id: Optional[str] = None,
    ) -> SendResult:
        """Append a user message; resends with a known correlation id are no-ops"""
        self._check_content(data.content)
        chat_crud.require_chat(db, chat_id, user_id)
        for reference in (data.reply_to_id, data.thread_id):
            if reference:
                message_crud.get_message(db, chat_id, reference)

        async with self.chat_locks.hold(chat_id):
            attempt = 1
            if data.correlation_id:
                latest = message_crud.find_latest_attempt(db, chat_id, data.correlation_id)
                if latest is not None and latest.status != MessageStatus.failed.value:
                    chat_logger.info("Duplicate send ignored", chat_id=chat_id, correlation_id=data.correlation_id)
                    result = SendResult(latest, duplicate=True)
                    if receipt_id:
                        with transaction(db, "send_message_receipt"):
                            record_receipt(db, user_id, receipt_id, OperationKind.send_message.value, result.to_dict())
                    return result
                if latest is not None:
                    attempt = latest.attempt + 1

            result = await self._append_and_publish(
                db, user_id, chat_id, data, attempt, origin_session_id, receipt_id
            )

        if data.request_bot_reply:
            result.bot_reply_started = await self._start_bot_reply(chat_id, result.message, user_id)
        return result

    async def retry_message(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        message_id: str,
        request_bot_reply: bool = True,
        origin_session_id: Optional[str] = None,
    ) -> SendResult:
        """Resend a failed message as a new attempt under the same correlation id"""
        chat_crud.require_chat(db, chat_id, user_id)
        failed = message_crud.get_message(db, chat_id, message_id)
        if failed.status != MessageStatus.failed.value:
            raise ValidationError("Only failed messages can be retried", details={"message_id": message_id})

        data = MessageCreate(
            content=failed.content,
            content_type=failed.content_type,
            correlation_id=failed.correlation_id,
            reply_to_id=failed.reply_to_id,
            thread_id=failed.thread_id,
            request_bot_reply=request_bot_reply,
        )
        async with self.chat_locks.hold(chat_id):
            latest = failed
            if failed.correlation_id:
                latest = message_crud.find_latest_attempt(db, chat_id, failed.correlation_id) or failed
                if latest.status != MessageStatus.failed.value:
                    return SendResult(latest, duplicate=True)
            result = await self._append_and_publish(
                db, user_id, chat_id, data, latest.attempt + 1, origin_session_id, None
            )

        if request_bot_reply:
            result.bot_reply_started = await self._start_bot_reply(chat_id, result.message, user_id)
        return result

    async def edit_message(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        message_id: str,
        content: str,
        origin_session_id: Optional[str] = None,
    ) -> Message:
        self._check_content(content)
        async with self.chat_locks.hold(chat_id):
            with transaction(db, "edit_message"):
                chat_crud.require_chat(db, chat_id, user_id)
                message = message_crud.get_message(db, chat_id, message_id)
                message_crud.edit_message(db, message, content, settings.message_edit_window_hours)
            await self.router.publish(
                chat_id,
                RealtimeEvent(
                    type=EventType.MESSAGE_UPDATED,
                    chat_id=chat_id,
                    data={"message": message_crud.serialize_message(message)},
                    origin_session_id=origin_session_id,
                ),
            )
        return message

    async def delete_message(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        message_id: str,
        hard: bool = False,
    ) -> None:
        async with self.chat_locks.hold(chat_id):
            with transaction(db, "delete_message"):
                chat = chat_crud.require_chat(db, chat_id, user_id)
                message = message_crud.get_message(db, chat_id, message_id, include_deleted=hard)
                message_crud.delete_message(db, chat, message, hard=hard)
            chat_logger.info("Message deleted", chat_id=chat_id, message_id=message_id, hard=hard)
            await self.router.publish(
                chat_id,
                RealtimeEvent(
                    type=EventType.MESSAGE_DELETED,
                    chat_id=chat_id,
                    data={"message_id": message_id, "hard": hard},
                ),
            )

    async def react(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        message_id: str,
        emoji: str,
        add: bool = True,
    ) -> Dict[str, List[str]]:
        async with self.chat_locks.hold(chat_id):
            with transaction(db, "react"):
                chat_crud.require_chat(db, chat_id, user_id)
                message = message_crud.get_message(db, chat_id, message_id)
                reactions, changed = message_crud.set_reaction(db, message, emoji, user_id, add)
            if changed:
                await self.router.publish(
                    chat_id,
                    RealtimeEvent(
                        type=EventType.REACTION_UPDATE,
                        chat_id=chat_id,
                        data={"message_id": message_id, "reactions": reactions},
                    ),
                )
        return reactions

    async def update_status(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        message_id: str,
        status: MessageStatus,
        origin_session_id: Optional[str] = None,
    ) -> Message:
        """Advance delivery status, publishing every intermediate step"""
        async with self.chat_locks.hold(chat_id):
            with transaction(db, "update_status"):
                chat_crud.require_chat(db, chat_id, user_id)
                message = message_crud.get_message(db, chat_id, message_id)
                steps = message_crud.advance_status(db, message, status)
            for step in steps:
                await self.router.publish(chat_id, status_event(chat_id, message_id, step.value, origin_session_id))
        return message

    async def stop_generation(self, db: Session, user_id: str, chat_id: str) -> bool:
        chat_crud.require_chat(db, chat_id, user_id)
        return await self.streamer.stop(chat_id)

    # Live sessions

    def subscribe(self, session: LiveSession, chat_id: str) -> None:
        self.router.subscribe(session.id, chat_id)

    def unsubscribe(self, session: LiveSession, chat_id: str) -> None:
        self.router.unsubscribe(session.id, chat_id)

    async def typing(self, session: LiveSession, chat_id: str, is_typing: bool) -> int:
        if chat_id not in session.chats:
            raise ChatNotFound(chat_id)
        return await self.router.publish(
            chat_id, typing_event(chat_id, is_typing, actor=session.user_id, origin_session_id=session.id)
        )

    # Folders

    def create_folder(self, db: Session, user_id: str, name: str) -> Folder:
        if not name.strip():
            raise ValidationError("Folder name cannot be empty")
        with transaction(db, "create_folder"):
            return folder_crud.create_folder(db, user_id, name)

    def list_folders(self, db: Session, user_id: str) -> List[Folder]:
        return folder_crud.get_user_folders(db, user_id)

    def delete_folder(self, db: Session, user_id: str, folder_id: str) -> int:
        with transaction(db, "delete_folder"):
            folder = folder_crud.require_folder(db, folder_id, user_id)
            return folder_crud.delete_folder(db, folder)

    # Internals

    async def _append_and_publish(
        self,
        db: Session,
        user_id: str,
        chat_id: str,
        data: MessageCreate,
        attempt: int,
        origin_session_id: Optional[str],
        receipt_id: Optional[str],
    ) -> SendResult:
        """Append under the caller's chat lock, commit, then publish"""
        with transaction(db, "send_message"):
            chat = chat_crud.require_chat(db, chat_id, user_id, for_update=True)
            message = message_crud.append_message(
                db,
                chat,
                MessageRole.user,
                data.content,
                content_type=data.content_type,
                correlation_id=data.correlation_id,
                attempt=attempt,
                reply_to_id=data.reply_to_id,
                thread_id=data.thread_id,
            )
            result = SendResult(message)
            if receipt_id:
                record_receipt(db, user_id, receipt_id, OperationKind.send_message.value, result.to_dict())

        payload = message_crud.serialize_message(message)
        chat_logger.info("Message appended", chat_id=chat_id, message_id=message.id, seq=message.seq)
        await self.router.publish(chat_id, new_message_event(payload, origin_session_id))
        return result

    async def _start_bot_reply(self, chat_id: str, message: Message, user_id: str) -> bool:
        try:
            self.streamer.start(
                chat_id,
                user_id,
                message.content,
                trigger_message_id=message.id,
                correlation_id=message.correlation_id,
            )
            return True
        except GenerationInProgress as e:
            chat_logger.info("Bot reply already in progress", chat_id=chat_id)
            await self.router.publish(
                chat_id,
                error_event(e.code, e.message, chat_id=chat_id, message_id=message.id,
                            correlation_id=message.correlation_id),
            )
            return False

    def _check_content(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")
        if len(content) > settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {settings.max_message_length} characters",
                details={"length": len(content)},
            )

    def _clean_title(self, title: str) -> str:
        title = title.strip()
        if not title:
            raise ValidationError("Chat title cannot be empty")
        if len(title) > settings.chat_title_max_length:
            raise ValidationError(f"Chat title exceeds {settings.chat_title_max_length} characters")
        return title

    def _clean_tags(self, tags: List[str]) -> List[str]:
        cleaned = []
        for tag in tags:
            tag = tag.strip()
            if not tag:
                continue
            if len(tag) > TAG_MAX_LENGTH:
                raise ValidationError(f"Tags are limited to {TAG_MAX_LENGTH} characters", details={"tag": tag})
            if tag not in cleaned:
                cleaned.append(tag)
        if len(cleaned) > settings.max_tags:
            raise ValidationError(f"A chat can have at most {settings.max_tags} tags")
        return cleaned

    def _clamp(self, limit: int) -> int:
        return max(1, min(limit, settings.max_page_size))


def chat_access_check(session_factory: SessionFactory, user_id: str, chat_id: str) -> bool:
    """Whether ``user_id`` may subscribe to ``chat_id``"""
    with session_factory() as db:
        return chat_crud.get_chat_by_id(db, chat_id, user_id) is not None


def build_chat_service(
    session_factory: Optional[SessionFactory] = None,
    provider: Optional[GenerationProvider] = None,
    notifier: Optional[NotificationPublisher] = None,
) -> ChatService:
    """Wire the router, streamer and service around one set of chat locks"""
    session_factory = session_factory or partial(DatabaseSession, "realtime")
    chat_locks = KeyedLocks()
    router = DeliveryRouter(access_check=partial(chat_access_check, session_factory))
    streamer = BotResponseStreamer(
        router,
        provider or LangChainGenerationProvider(),
        chat_locks,
        session_factory=session_factory,
        notifier=notifier or create_notification_publisher(),
    )
    return ChatService(router, streamer, chat_locks, session_factory=session_factory)


# Global service instance
_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    global _chat_service
    if _chat_service is None:
        _chat_service = build_chat_service()
    return _chat_service
