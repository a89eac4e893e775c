from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional, Tuple
from app.core.exceptions import ChatNotFound, ConflictError
from app.core.ids import as_utc, new_id, utcnow
from app.models.chat import Chat
from app.models.message import Message
from app.schemas.chat import Chat as ChatSchema

# Chat fields a client may change through an update
UPDATABLE_FIELDS = ("title", "folder_id", "tags", "metadata", "is_favorite", "is_archived")

_COLUMN_FOR_FIELD = {"metadata": "chat_metadata"}


def serialize_chat(chat: Chat) -> Dict[str, Any]:
    """JSON-safe snapshot of a chat"""
    return ChatSchema.model_validate(chat).model_dump(mode="json")


def get_chat_by_id(db: Session, chat_id: str, user_id: str, for_update: bool = False) -> Optional[Chat]:
    """Get a live chat by ID for a specific user"""
    query = db.query(Chat).filter(
        Chat.id == chat_id,
        Chat.user_id == user_id,
        Chat.deleted_at.is_(None),
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def require_chat(db: Session, chat_id: str, user_id: str, for_update: bool = False) -> Chat:
    """Like get_chat_by_id but raises ChatNotFound"""
    chat = get_chat_by_id(db, chat_id, user_id, for_update=for_update)
    if chat is None:
        raise ChatNotFound(chat_id)
    return chat


def get_chat_by_correlation(db: Session, user_id: str, correlation_id: str) -> Optional[Chat]:
    return (
        db.query(Chat)
        .filter(Chat.user_id == user_id, Chat.client_correlation_id == correlation_id)
        .first()
    )


def get_user_chats(
    db: Session,
    user_id: str,
    folder_id: Optional[str] = None,
    tag: Optional[str] = None,
    is_favorite: Optional[bool] = None,
    is_archived: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Chat], int]:
    """Get chats for a user, most recently updated first"""
    query = _filtered_chats(db, user_id, folder_id, is_favorite, is_archived)
    ordered = query.order_by(Chat.updated_at.desc(), Chat.id.desc())

    if not tag:
        return ordered.offset(offset).limit(limit).all(), query.count()

    # Tags live in a JSON column; filter portably here
    chats = [chat for chat in ordered.all() if tag in (chat.tags or [])]
    return chats[offset:offset + limit], len(chats)


def create_chat(
    db: Session,
    user_id: str,
    title: str,
    folder_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> Chat:
    """Create a new chat (flushed, not committed)"""
    now = utcnow()
    db_chat = Chat(
        id=new_id("chat"),
        user_id=user_id,
        title=title,
        folder_id=folder_id,
        tags=list(tags or []),
        chat_metadata=dict(metadata or {}),
        is_favorite=False,
        is_archived=False,
        message_count=0,
        last_seq=0,
        version=1,
        field_versions={},
        client_correlation_id=correlation_id,
        created_at=now,
        updated_at=now,
    )
    db.add(db_chat)
    db.flush()
    return db_chat


def update_chat(db: Session, chat: Chat, changes: Dict[str, Any], base_version: int) -> List[str]:
    """Apply a partial update with per-field last-write-wins.

    A stale ``base_version`` is accepted as long as none of the submitted
    fields changed after it. Returns the names of the fields that changed.
    """
    field_versions = dict(chat.field_versions or {})

    if base_version > chat.version:
        raise ConflictError(chat.version, serialize_chat(chat), fields=sorted(changes))

    if base_version < chat.version:
        stale = sorted(
            field for field in changes
            if field_versions.get(field, 1) > base_version
        )
        if stale:
            raise ConflictError(chat.version, serialize_chat(chat), fields=stale)

    changed = [
        field for field, value in changes.items()
        if getattr(chat, _COLUMN_FOR_FIELD.get(field, field)) != value
    ]
    if not changed:
        return []

    new_version = chat.version + 1
    for field in changed:
        setattr(chat, _COLUMN_FOR_FIELD.get(field, field), changes[field])
        field_versions[field] = new_version

    chat.version = new_version
    chat.field_versions = field_versions
    chat.updated_at = utcnow()
    db.flush()
    return changed


def delete_chat(db: Session, chat: Chat, hard: bool = False) -> int:
    """Delete a chat and its messages; returns how many live messages went with it"""
    deleted_count = (
        db.query(Message)
        .filter(Message.chat_id == chat.id, Message.deleted_at.is_(None))
        .count()
    )

    if hard:
        db.query(Message).filter(Message.chat_id == chat.id).delete(synchronize_session=False)
        db.delete(chat)
    else:
        now = utcnow()
        db.query(Message).filter(
            Message.chat_id == chat.id,
            Message.deleted_at.is_(None),
        ).update({Message.deleted_at: now}, synchronize_session=False)
        chat.deleted_at = now
        chat.message_count = 0
        chat.updated_at = now

    db.flush()
    return deleted_count


def search_chats(
    db: Session,
    user_id: str,
    query_text: str,
    folder_id: Optional[str] = None,
    tag: Optional[str] = None,
    is_favorite: Optional[bool] = None,
    is_archived: Optional[bool] = None,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    """Match chat titles and message content, ranked with snippets"""
    needle = query_text.strip()
    if not needle:
        return []
    pattern = "%" + _escape_like(needle) + "%"

    chats_query = _filtered_chats(db, user_id, folder_id, is_favorite, is_archived)
    title_hits = chats_query.filter(Chat.title.ilike(pattern, escape="\\")).all()

    message_hits = (
        _filtered_chats(db, user_id, folder_id, is_favorite, is_archived)
        .join(Message, Message.chat_id == Chat.id)
        .filter(Message.deleted_at.is_(None), Message.content.ilike(pattern, escape="\\"))
        .with_entities(Chat, Message)
        .order_by(Message.created_at.desc())
        .limit(limit * 5)
        .all()
    )

    results = []
    for chat in title_hits:
        if tag and tag not in (chat.tags or []):
            continue
        results.append({
            "type": "chat",
            "chat_id": chat.id,
            "chat_title": chat.title,
            "message_id": None,
            "snippet": make_snippet(chat.title, needle),
            "score": _title_score(chat.title, needle),
            "updated_at": chat.updated_at,
        })

    for chat, message in message_hits:
        if tag and tag not in (chat.tags or []):
            continue
        occurrences = message.content.lower().count(needle.lower())
        results.append({
            "type": "message",
            "chat_id": chat.id,
            "chat_title": chat.title,
            "message_id": message.id,
            "snippet": make_snippet(message.content, needle),
            "score": 1.0 + min(occurrences, 5) * 0.1,
            "updated_at": message.created_at,
        })

    results.sort(key=lambda hit: (hit["score"], as_utc(hit["updated_at"])), reverse=True)
    return results[:limit]


def make_snippet(text: str, needle: str, radius: int = 40) -> str:
    """Cut a window of text around the first match"""
    index = text.lower().find(needle.lower())
    if index < 0:
        return text[: radius * 2]
    start = max(index - radius, 0)
    end = min(index + len(needle) + radius, len(text))
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def _title_score(title: str, needle: str) -> float:
    lowered, target = title.lower(), needle.lower()
    if lowered == target:
        return 3.0
    if lowered.startswith(target):
        return 2.5
    return 2.0


def _filtered_chats(
    db: Session,
    user_id: str,
    folder_id: Optional[str],
    is_favorite: Optional[bool],
    is_archived: Optional[bool],
):
    query = db.query(Chat).filter(Chat.user_id == user_id, Chat.deleted_at.is_(None))
    if folder_id is not None:
        query = query.filter(Chat.folder_id == folder_id)
    if is_favorite is not None:
        query = query.filter(Chat.is_favorite == is_favorite)
    if is_archived is not None:
        query = query.filter(Chat.is_archived == is_archived)
    return query


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
