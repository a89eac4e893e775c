from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.config import settings
from app.core.logging import get_logger
from app.core.security import AuthIdentity, get_current_identity
from app.database.connection import get_db
from app.models.chat import Chat as ChatModel
from app.models.message import Message as MessageModel
from app.schemas.chat import (
    Chat, ChatConflict, ChatCreate, ChatDeleteResponse, ChatDetail, ChatList, ChatUpdate,
    Message, MessageCreate, MessageEdit, MessagePage, ReactionAction, ReactionRequest,
    ReactionResponse, SearchResponse, SendMessageResponse, SortOrder, StatusUpdate,
    StopGenerationResponse,
)
from app.services.chat_service import ChatService, get_chat_service

logger = get_logger(__name__)
router = APIRouter(prefix="/chats", tags=["chats"])


def to_detail(chat: ChatModel, messages: List[MessageModel]) -> ChatDetail:
    return ChatDetail(
        **Chat.model_validate(chat).model_dump(),
        messages=[Message.model_validate(message) for message in messages],
    )


@router.post("", response_model=ChatDetail, status_code=status.HTTP_201_CREATED)
async def create_chat(
    chat: ChatCreate,
    response: Response,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Create a chat, optionally with its first message"""
    result = await service.create_chat(db, identity.user_id, chat)
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return to_detail(result.chat, [result.message] if result.message is not None else [])


@router.get("", response_model=ChatList)
async def list_chats(
    folder_id: Optional[str] = None,
    tag: Optional[str] = None,
    is_favorite: Optional[bool] = None,
    is_archived: Optional[bool] = None,
    limit: int = Query(settings.default_page_size, ge=1),
    offset: int = Query(0, ge=0),
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Get the current user's chats, most recently updated first"""
    chats, total = service.list_chats(
        db,
        identity.user_id,
        folder_id=folder_id,
        tag=tag,
        is_favorite=is_favorite,
        is_archived=is_archived,
        limit=limit,
        offset=offset,
    )
    return ChatList(chats=[Chat.model_validate(chat) for chat in chats], total=total)


@router.get("/search", response_model=SearchResponse)
async def search_chats(
    q: str = Query(..., min_length=1),
    folder_id: Optional[str] = None,
    tag: Optional[str] = None,
    is_favorite: Optional[bool] = None,
    is_archived: Optional[bool] = None,
    limit: int = Query(20, ge=1),
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Search chat titles and message content"""
    results = service.search(
        db,
        identity.user_id,
        q,
        folder_id=folder_id,
        tag=tag,
        is_favorite=is_favorite,
        is_archived=is_archived,
        limit=limit,
    )
    return {"query": q, "results": results}


@router.get("/{chat_id}", response_model=ChatDetail)
async def get_chat(
    chat_id: str,
    message_limit: int = Query(settings.default_page_size, ge=1),
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Get a chat with its latest messages"""
    chat, messages = service.get_chat(db, identity.user_id, chat_id, message_limit=message_limit)
    return to_detail(chat, messages)


@router.patch("/{chat_id}", response_model=Chat, responses={409: {"model": ChatConflict}})
async def update_chat(
    chat_id: str,
    update: ChatUpdate,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Update chat metadata against the version the client last saw"""
    chat = await service.update_chat(db, identity.user_id, chat_id, update)
    return Chat.model_validate(chat)


@router.delete("/{chat_id}", response_model=ChatDeleteResponse)
async def delete_chat(
    chat_id: str,
    confirm: bool = False,
    hard: bool = False,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Delete a chat and its messages (requires confirm=true)"""
    deleted = await service.delete_chat(db, identity.user_id, chat_id, confirm=confirm, hard=hard)
    return ChatDeleteResponse(chat_id=chat_id, deleted_message_count=deleted)


@router.get("/{chat_id}/messages", response_model=MessagePage)
async def list_messages(
    chat_id: str,
    limit: int = Query(settings.default_page_size, ge=1),
    offset: int = Query(0, ge=0),
    before: Optional[str] = None,
    after: Optional[str] = None,
    order: SortOrder = SortOrder.desc,
    include_deleted: bool = False,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Page through messages by sequence; use next_cursor as before/after"""
    rows, has_more, next_cursor = service.list_messages(
        db,
        identity.user_id,
        chat_id,
        limit=limit,
        offset=offset,
        before=before,
        after=after,
        order=order.value,
        include_deleted=include_deleted,
    )
    return MessagePage(
        messages=[Message.model_validate(row) for row in rows],
        has_more=has_more,
        next_cursor=next_cursor,
    )


@router.post("/{chat_id}/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: str,
    message: MessageCreate,
    response: Response,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Send a message; the bot reply streams over the WebSocket"""
    result = await service.send_message(db, identity.user_id, chat_id, message)
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return SendMessageResponse(message=Message.model_validate(result.message), duplicate=result.duplicate)


@router.patch("/{chat_id}/messages/{message_id}", response_model=Message)
async def edit_message(
    chat_id: str,
    message_id: str,
    edit: MessageEdit,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    message = await service.edit_message(db, identity.user_id, chat_id, message_id, edit.content)
    return Message.model_validate(message)


@router.delete("/{chat_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    chat_id: str,
    message_id: str,
    hard: bool = False,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    await service.delete_message(db, identity.user_id, chat_id, message_id, hard=hard)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{chat_id}/messages/{message_id}/retry", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def retry_message(
    chat_id: str,
    message_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Resend a failed message as a new attempt"""
    result = await service.retry_message(db, identity.user_id, chat_id, message_id)
    return SendMessageResponse(message=Message.model_validate(result.message), duplicate=result.duplicate)


@router.post("/{chat_id}/messages/{message_id}/reactions", response_model=ReactionResponse)
async def react_to_message(
    chat_id: str,
    message_id: str,
    reaction: ReactionRequest,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    reactions = await service.react(
        db,
        identity.user_id,
        chat_id,
        message_id,
        reaction.emoji,
        add=reaction.action == ReactionAction.add,
    )
    return ReactionResponse(message_id=message_id, reactions=reactions)


@router.post("/{chat_id}/messages/{message_id}/status", response_model=Message)
async def update_message_status(
    chat_id: str,
    message_id: str,
    update: StatusUpdate,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Report delivery or read receipts"""
    message = await service.update_status(db, identity.user_id, chat_id, message_id, update.status)
    return Message.model_validate(message)


@router.post("/{chat_id}/generation/stop", response_model=StopGenerationResponse)
async def stop_generation(
    chat_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    cancelled = await service.stop_generation(db, identity.user_id, chat_id)
    logger.info("Generation stop requested", chat_id=chat_id, cancelled=cancelled)
    return StopGenerationResponse(chat_id=chat_id, cancelled=cancelled)
