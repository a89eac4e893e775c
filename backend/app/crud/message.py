from datetime import timedelta
from sqlalchemy.orm import Session
from typing import Dict, Iterator, List, Optional, Tuple
from app.core.exceptions import (
    EditNotAllowed, EditWindowExpired, InvalidStatusTransition, MessageNotFound, ValidationError
)
from app.core.ids import as_utc, new_id, utcnow
from app.models.chat import Chat
from app.models.enums import MessageRole, MessageStatus
from app.models.message import Message
from app.schemas.chat import Message as MessageSchema

# Forward-only delivery path; 'failed' branches off before delivery
STATUS_PATH = [
    MessageStatus.sending,
    MessageStatus.sent,
    MessageStatus.delivered,
    MessageStatus.read,
]


def serialize_message(message: Message) -> Dict:
    """JSON-safe snapshot of a message"""
    return MessageSchema.model_validate(message).model_dump(mode="json")


def append_message(
    db: Session,
    chat: Chat,
    role: MessageRole,
    content: str,
    content_type: str = "text",
    status: MessageStatus = MessageStatus.sent,
    correlation_id: Optional[str] = None,
    attempt: int = 1,
    reply_to_id: Optional[str] = None,
    thread_id: Optional[str] = None,
    is_truncated: bool = False,
) -> Message:
    """Append a message, allocating the next sequence number for the chat.

    The counter bump is a single UPDATE on the chat row, so concurrent
    appends to one chat serialize on that row while other chats proceed.
    """
    now = utcnow()
    db.query(Chat).filter(Chat.id == chat.id).update(
        {
            Chat.last_seq: Chat.last_seq + 1,
            Chat.message_count: Chat.message_count + 1,
            Chat.updated_at: now,
        },
        synchronize_session=False,
    )
    db.refresh(chat, attribute_names=["last_seq", "message_count", "updated_at"])

    db_message = Message(
        id=new_id("msg"),
        chat_id=chat.id,
        seq=chat.last_seq,
        role=MessageRole(role).value,
        content=content,
        content_type=content_type,
        status=MessageStatus(status).value,
        correlation_id=correlation_id,
        attempt=attempt,
        reply_to_id=reply_to_id,
        thread_id=thread_id,
        reactions={},
        edit_history=[],
        is_truncated=is_truncated,
        created_at=now,
    )
    db.add(db_message)
    db.flush()
    return db_message


def get_message(db: Session, chat_id: str, message_id: str, include_deleted: bool = False) -> Message:
    query = db.query(Message).filter(Message.chat_id == chat_id, Message.id == message_id)
    if not include_deleted:
        query = query.filter(Message.deleted_at.is_(None))
    message = query.first()
    if message is None:
        raise MessageNotFound(message_id)
    return message


def find_latest_attempt(db: Session, chat_id: str, correlation_id: str) -> Optional[Message]:
    """Most recent attempt for a client correlation id, if any"""
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id, Message.correlation_id == correlation_id)
        .order_by(Message.attempt.desc())
        .first()
    )


def list_messages(
    db: Session,
    chat_id: str,
    limit: int = 50,
    offset: int = 0,
    before: Optional[str] = None,
    after: Optional[str] = None,
    order: str = "desc",
    include_deleted: bool = False,
) -> Tuple[List[Message], bool]:
    """Page through a chat's messages by sequence number.

    ``before``/``after`` are message ids used as cursors; they are stable
    under concurrent appends, unlike ``offset``.
    """
    if before and after:
        raise ValidationError("Use either 'before' or 'after', not both")
    if limit < 1:
        raise ValidationError("limit must be positive")

    query = db.query(Message).filter(Message.chat_id == chat_id)
    if not include_deleted:
        query = query.filter(Message.deleted_at.is_(None))
    if before:
        query = query.filter(Message.seq < _cursor_seq(db, chat_id, before))
    if after:
        query = query.filter(Message.seq > _cursor_seq(db, chat_id, after))

    if order == "asc":
        query = query.order_by(Message.seq.asc())
    else:
        query = query.order_by(Message.seq.desc())

    rows = query.offset(offset).limit(limit + 1).all()
    return rows[:limit], len(rows) > limit


def iter_messages(db: Session, chat_id: str, page_size: int = 200) -> Iterator[Message]:
    """Oldest-first traversal of every live message, for export readers"""
    cursor_seq = 0
    while True:
        page = (
            db.query(Message)
            .filter(
                Message.chat_id == chat_id,
                Message.deleted_at.is_(None),
                Message.seq > cursor_seq,
            )
            .order_by(Message.seq.asc())
            .limit(page_size)
            .all()
        )
        if not page:
            return
        for message in page:
            yield message
        cursor_seq = page[-1].seq


def recent_messages(db: Session, chat_id: str, limit: int) -> List[Message]:
    """The latest ``limit`` live messages, oldest first"""
    rows, _ = list_messages(db, chat_id, limit=limit, order="desc")
    return list(reversed(rows))


def edit_message(db: Session, message: Message, new_content: str, window_hours: int) -> Message:
    """Replace content, keeping the previous version in the edit history"""
    if message.role != MessageRole.user.value:
        raise EditNotAllowed("Only user messages can be edited", details={"message_id": message.id})

    now = utcnow()
    if now - as_utc(message.created_at) > timedelta(hours=window_hours):
        raise EditWindowExpired(
            f"Messages can only be edited within {window_hours} hours",
            details={"message_id": message.id},
        )

    if new_content == message.content:
        return message

    history = list(message.edit_history or [])
    history.append({"content": message.content, "edited_at": now.isoformat()})
    message.edit_history = history
    message.content = new_content
    message.edited_at = now
    db.flush()
    return message


def delete_message(db: Session, chat: Chat, message: Message, hard: bool = False) -> None:
    """Soft delete keeps the row for audit; hard delete removes it"""
    was_live = message.deleted_at is None
    if hard:
        db.delete(message)
    else:
        message.deleted_at = utcnow()

    if was_live:
        db.query(Chat).filter(Chat.id == chat.id).update(
            {Chat.message_count: Chat.message_count - 1, Chat.updated_at: utcnow()},
            synchronize_session=False,
        )
    db.flush()
    db.refresh(chat, attribute_names=["message_count", "updated_at"])


def set_reaction(db: Session, message: Message, emoji: str, user_id: str, add: bool) -> Tuple[Dict[str, List[str]], bool]:
    """Add or remove one user's reaction; repeating either is a no-op"""
    reactions = {key: list(users) for key, users in (message.reactions or {}).items()}
    users = set(reactions.get(emoji, []))

    if (add and user_id in users) or (not add and user_id not in users):
        return reactions, False

    if add:
        users.add(user_id)
    else:
        users.discard(user_id)

    if users:
        reactions[emoji] = sorted(users)
    else:
        reactions.pop(emoji, None)

    message.reactions = reactions
    db.flush()
    return reactions, True


def plan_status_path(current: MessageStatus, target: MessageStatus) -> List[MessageStatus]:
    """Statuses a message passes through to reach ``target``.

    Empty when the target is current or already behind us. Skipped steps on
    the forward path are included so observers see every intermediate state.
    """
    current, target = MessageStatus(current), MessageStatus(target)
    if current == target:
        return []
    if current == MessageStatus.failed:
        raise InvalidStatusTransition(current.value, target.value)
    if target == MessageStatus.failed:
        if current in (MessageStatus.sending, MessageStatus.sent):
            return [MessageStatus.failed]
        raise InvalidStatusTransition(current.value, target.value)

    current_index = STATUS_PATH.index(current)
    target_index = STATUS_PATH.index(target)
    if target_index <= current_index:
        return []
    return STATUS_PATH[current_index + 1:target_index + 1]


def advance_status(db: Session, message: Message, target: MessageStatus) -> List[MessageStatus]:
    """Move a message towards ``target``; returns the steps taken"""
    steps = plan_status_path(MessageStatus(message.status), target)
    if steps:
        message.status = steps[-1].value
        db.flush()
    return steps


def _cursor_seq(db: Session, chat_id: str, message_id: str) -> int:
    seq = (
        db.query(Message.seq)
        .filter(Message.chat_id == chat_id, Message.id == message_id)
        .scalar()
    )
    if seq is None:
        raise MessageNotFound(message_id)
    return seq
