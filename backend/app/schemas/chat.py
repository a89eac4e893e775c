from pydantic import BaseModel, Field, AliasChoices
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from app.models.enums import MessageRole, MessageStatus


class EditSnapshot(BaseModel):
    content: str
    edited_at: datetime


class MessageBase(BaseModel):
    content: str = Field(..., min_length=1)
    content_type: str = "text"


class MessageCreate(MessageBase):
    correlation_id: Optional[str] = Field(None, max_length=64)
    reply_to_id: Optional[str] = None
    thread_id: Optional[str] = None
    request_bot_reply: bool = True


class MessageEdit(BaseModel):
    content: str = Field(..., min_length=1)


class Message(MessageBase):
    id: str
    chat_id: str
    seq: int
    role: MessageRole
    status: MessageStatus
    correlation_id: Optional[str] = None
    attempt: int = 1
    reply_to_id: Optional[str] = None
    thread_id: Optional[str] = None
    reactions: Dict[str, List[str]] = {}
    edit_history: List[EditSnapshot] = []
    is_truncated: bool = False
    created_at: datetime
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


class MessagePage(BaseModel):
    messages: List[Message]
    has_more: bool
    next_cursor: Optional[str] = None


class SendMessageResponse(BaseModel):
    message: Message
    duplicate: bool = False


class ReactionAction(str, Enum):
    add = "add"
    remove = "remove"


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)
    action: ReactionAction = ReactionAction.add


class ReactionResponse(BaseModel):
    message_id: str
    reactions: Dict[str, List[str]]


class StatusUpdate(BaseModel):
    status: MessageStatus


class ChatBase(BaseModel):
    title: Optional[str] = None
    folder_id: Optional[str] = None
    tags: List[str] = []
    metadata: Dict[str, Any] = {}


class ChatCreate(ChatBase):
    initial_message: Optional[MessageCreate] = None
    correlation_id: Optional[str] = Field(None, max_length=64)


class ChatUpdate(BaseModel):
    """Partial update; only fields that are set are applied"""
    version: int = Field(..., ge=1)
    title: Optional[str] = None
    folder_id: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    is_favorite: Optional[bool] = None
    is_archived: Optional[bool] = None


class Chat(BaseModel):
    id: str
    user_id: str
    title: str
    folder_id: Optional[str] = None
    tags: List[str] = []
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("chat_metadata", "metadata"))
    is_favorite: bool = False
    is_archived: bool = False
    message_count: int = 0
    version: int = 1
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChatDetail(Chat):
    messages: List[Message] = []


class ChatList(BaseModel):
    chats: List[Chat]
    total: int


class ChatConflict(BaseModel):
    detail: str
    code: str = "conflict"
    current: Chat


class ChatDeleteResponse(BaseModel):
    chat_id: str
    deleted_message_count: int


class SearchHitType(str, Enum):
    chat = "chat"
    message = "message"


class SearchHit(BaseModel):
    type: SearchHitType
    chat_id: str
    chat_title: str
    message_id: Optional[str] = None
    snippet: str
    score: float
    updated_at: datetime


class SearchResponse(BaseModel):
    query: str
    results: List[SearchHit]


class FolderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class Folder(BaseModel):
    id: str
    user_id: str
    name: str
    created_at: datetime

    class Config:
        from_attributes = True


class StopGenerationResponse(BaseModel):
    chat_id: str
    cancelled: bool
