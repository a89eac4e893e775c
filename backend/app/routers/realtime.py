"""
WebSocket gateway.

Each connection runs three tasks: a reader that dispatches client frames, a
writer that drains the session's outbound queue, and a heartbeat that pings
the client. Whichever finishes first ends the connection. Bot replies started
over a connection keep running after it closes.
"""

import asyncio
import json
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, WebSocketException, status
from starlette.websockets import WebSocketState
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import ChatCoreError, ValidationError
from app.core.logging import bind_connection, clear_connection, get_logger
from app.core.monitoring import record_session_disconnect
from app.core.security import verify_token
from app.models.enums import MessageStatus
from app.schemas.chat import ChatCreate, MessageCreate
from app.schemas.events import EventType, InboundType, WsInbound
from app.services.chat_service import ChatService, get_chat_service
from app.services.delivery_router import LiveSession, RealtimeEvent, error_event

logger = get_logger("realtime")
router = APIRouter(tags=["realtime"])

# Application close codes
CLOSE_RESYNC_REQUIRED = 4000
CLOSE_HEARTBEAT_TIMEOUT = 4001

# How long a closing connection may spend flushing queued events
WRITER_DRAIN_SECONDS = 1.0


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(..., description="Authentication token"),
    device_id: Optional[str] = Query(None),
    service: ChatService = Depends(get_chat_service),
):
    identity = verify_token(
        token,
        WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Could not validate credentials"),
        device_id=device_id,
    )
    await websocket.accept()

    session = service.router.register(identity.user_id, identity.device_id)
    bind_connection(session.id, identity.user_id, identity.device_id)
    service.router.send_to_session(
        session.id,
        RealtimeEvent(
            type=EventType.CONNECTED,
            data={
                "session_id": session.id,
                "user_id": identity.user_id,
                "heartbeat_interval": settings.heartbeat_interval_seconds,
            },
        ),
    )

    writer = asyncio.create_task(_send_loop(websocket, session))
    tasks = {
        asyncio.create_task(_receive_loop(websocket, session, service)),
        writer,
        asyncio.create_task(_heartbeat(session, service)),
    }
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if service.router.get_session(session.id) is not None:
            record_session_disconnect("client_closed")
        # Closing the session lets the writer drain and return
        service.router.disconnect(session.id, reason="client_closed")
        try:
            await _stop_tasks(tasks, writer)
        finally:
            clear_connection()


async def _stop_tasks(tasks: Set[asyncio.Task], writer: asyncio.Task) -> None:
    """Cancel the reader and heartbeat, give the writer a moment to flush, then reap all three"""
    for task in tasks:
        if task is not writer:
            task.cancel()
    try:
        await asyncio.wait(tasks, timeout=WRITER_DRAIN_SECONDS)
    finally:
        for task in tasks:
            task.cancel()

    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            logger.error("Connection task failed", error=str(task.exception()))


async def _receive_loop(websocket: WebSocket, session: LiveSession, service: ChatService) -> None:
    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            return
        session.touch()

        request_id = None
        try:
            frame = WsInbound.model_validate(json.loads(raw))
            request_id = frame.request_id
            await handle_frame(service, session, frame)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            _reply(service, session, error_event("validation_error", f"Malformed frame: {e}"))
        except ChatCoreError as e:
            details = e.details if isinstance(e.details, dict) else {}
            _reply(
                service,
                session,
                RealtimeEvent(type=EventType.ERROR, chat_id=details.get("chat_id"), data=e.to_dict(), request_id=request_id),
            )


async def _send_loop(websocket: WebSocket, session: LiveSession) -> None:
    while True:
        event = await session.next_event()
        if event is None:
            break
        await websocket.send_json(event.to_wire())

    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    if session.close_reason == "resync_required":
        await websocket.close(code=CLOSE_RESYNC_REQUIRED, reason="resync_required")
    elif session.close_reason == "heartbeat_timeout":
        await websocket.close(code=CLOSE_HEARTBEAT_TIMEOUT, reason="heartbeat_timeout")
    else:
        await websocket.close()


async def _heartbeat(session: LiveSession, service: ChatService) -> None:
    """Ping on every interval; idle sessions are reaped by the delivery router"""
    while True:
        await asyncio.sleep(settings.heartbeat_interval_seconds)
        if not session.closed:
            service.router.send_to_session(session.id, RealtimeEvent(type=EventType.PING))


async def handle_frame(service: ChatService, session: LiveSession, frame: WsInbound) -> None:
    """Dispatch one client frame"""
    data = frame.data
    request_id = frame.request_id

    if frame.type == InboundType.PING:
        _reply(service, session, RealtimeEvent(type=EventType.PONG, request_id=request_id))
        return
    if frame.type == InboundType.PONG:
        return

    if frame.type == InboundType.SUBSCRIBE:
        chat_id = _require(data, "chat_id")
        service.subscribe(session, chat_id)
        _reply(service, session, RealtimeEvent(type=EventType.SUBSCRIBED, chat_id=chat_id, request_id=request_id))
        return

    if frame.type == InboundType.UNSUBSCRIBE:
        chat_id = _require(data, "chat_id")
        service.unsubscribe(session, chat_id)
        _reply(service, session, RealtimeEvent(type=EventType.UNSUBSCRIBED, chat_id=chat_id, request_id=request_id))
        return

    if frame.type == InboundType.TYPING:
        await service.typing(session, _require(data, "chat_id"), bool(data.get("is_typing", True)))
        return

    if frame.type == InboundType.CHAT_CREATE:
        chat_data = _parse(ChatCreate, data)
        with service.session_factory() as db:
            result = await service.create_chat(db, session.user_id, chat_data, origin_session_id=session.id)
            payload = result.to_dict()
            chat_id = result.chat.id
        if chat_id not in session.chats:
            service.subscribe(session, chat_id)
        _reply(
            service,
            session,
            RealtimeEvent(type=EventType.CHAT_CREATED, chat_id=chat_id, data=payload, request_id=request_id),
        )
        return

    if frame.type == InboundType.MESSAGE_SEND:
        chat_id = _require(data, "chat_id")
        message_data = _parse(MessageCreate, {key: value for key, value in data.items() if key != "chat_id"})
        if chat_id not in session.chats:
            service.subscribe(session, chat_id)
        with service.session_factory() as db:
            result = await service.send_message(
                db, session.user_id, chat_id, message_data, origin_session_id=session.id
            )
            ack = result.to_dict()
        ack["correlation_id"] = message_data.correlation_id
        _reply(
            service,
            session,
            RealtimeEvent(type=EventType.MESSAGE_ACK, chat_id=chat_id, data=ack, request_id=request_id),
        )
        return

    if frame.type == InboundType.MESSAGE_STATUS:
        chat_id = _require(data, "chat_id")
        try:
            target = MessageStatus(_require(data, "status"))
        except ValueError:
            raise ValidationError("Unknown message status", details={"status": data.get("status")})
        with service.session_factory() as db:
            await service.update_status(
                db, session.user_id, chat_id, _require(data, "message_id"), target, origin_session_id=session.id
            )
        return

    if frame.type == InboundType.REACTION:
        chat_id = _require(data, "chat_id")
        with service.session_factory() as db:
            await service.react(
                db,
                session.user_id,
                chat_id,
                _require(data, "message_id"),
                _require(data, "emoji"),
                add=data.get("action", "add") != "remove",
            )
        return

    if frame.type == InboundType.GENERATION_STOP:
        chat_id = _require(data, "chat_id")
        with service.session_factory() as db:
            cancelled = await service.stop_generation(db, session.user_id, chat_id)
        logger.info("Generation stop requested", chat_id=chat_id, cancelled=cancelled, session_id=session.id)
        return

    raise ValidationError(f"Unsupported frame type '{frame.type.value}'")


def _reply(service: ChatService, session: LiveSession, event: RealtimeEvent) -> None:
    service.router.send_to_session(session.id, event)


def _require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ValidationError(f"'{key}' is required")
    return value


def _parse(model, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid payload", details=e.errors(include_url=False)) from e
