from .chat import (
    Chat, ChatCreate, ChatUpdate, ChatDetail, ChatList, ChatConflict, ChatDeleteResponse,
    Message, MessageCreate, MessageEdit, MessagePage, SendMessageResponse, SortOrder,
    ReactionAction, ReactionRequest, ReactionResponse, StatusUpdate,
    SearchHit, SearchHitType, SearchResponse, Folder, FolderCreate, StopGenerationResponse,
)
from .events import EventType, InboundType, WsInbound, WsOutbound
from .sync import OperationOutcome, PendingOperationIn, SyncRequest, OperationResult, SyncResponse

__all__ = [
    "Chat", "ChatCreate", "ChatUpdate", "ChatDetail", "ChatList", "ChatConflict", "ChatDeleteResponse",
    "Message", "MessageCreate", "MessageEdit", "MessagePage", "SendMessageResponse", "SortOrder",
    "ReactionAction", "ReactionRequest", "ReactionResponse", "StatusUpdate",
    "SearchHit", "SearchHitType", "SearchResponse", "Folder", "FolderCreate", "StopGenerationResponse",
    "EventType", "InboundType", "WsInbound", "WsOutbound",
    "OperationOutcome", "PendingOperationIn", "SyncRequest", "OperationResult", "SyncResponse",
]
