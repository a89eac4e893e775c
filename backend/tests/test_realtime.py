import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from app.core.security import create_access_token
from app.routers.realtime import websocket_endpoint

from conftest import wait_until

CONNECTION_TASKS = {"_receive_loop", "_send_loop", "_heartbeat"}


def ws_url(user_id="user-1", device_id="laptop"):
    return f"/ws?token={create_access_token(user_id)}&device_id={device_id}"


def make_chat(client, auth_headers, title="Live"):
    response = client.post("/chats", json={"title": title}, headers=auth_headers)
    assert response.status_code == 201
    return response.json()["id"]


def subscribe(ws, chat_id):
    ws.send_json({"type": "subscribe", "data": {"chat_id": chat_id}, "request_id": f"sub-{chat_id}"})
    reply = ws.receive_json()
    assert reply["type"] == "subscribed"
    assert reply["chat_id"] == chat_id


def test_connection_is_greeted(client):
    with client.websocket_connect(ws_url()) as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["data"]["user_id"] == "user-1"
        assert hello["data"]["session_id"].startswith("ls_")

        ws.send_json({"type": "ping", "request_id": "p-1"})
        assert ws.receive_json() == {"type": "pong", "data": {}, "request_id": "p-1"}


def test_bad_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as error:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert error.value.code == 1008


def test_other_device_receives_exactly_one_new_message(client, auth_headers):
    chat_id = make_chat(client, auth_headers)

    with client.websocket_connect(ws_url(device_id="a")) as ws_a, client.websocket_connect(ws_url(device_id="b")) as ws_b:
        assert ws_a.receive_json()["type"] == "connected"
        assert ws_b.receive_json()["type"] == "connected"
        subscribe(ws_a, chat_id)
        subscribe(ws_b, chat_id)

        ws_a.send_json({
            "type": "message.send",
            "data": {"chat_id": chat_id, "content": "Hi from A", "correlation_id": "ws-1", "request_bot_reply": False},
            "request_id": "send-1",
        })
        own_copy = ws_a.receive_json()
        ack = ws_a.receive_json()
        assert own_copy["type"] == "message.new"
        assert ack["type"] == "message.ack"
        assert ack["request_id"] == "send-1"
        assert ack["data"]["correlation_id"] == "ws-1"
        assert ack["data"]["duplicate"] is False
        message_id = ack["data"]["message"]["id"]

        delivered = ws_b.receive_json()
        assert delivered["type"] == "message.new"
        assert delivered["chat_id"] == chat_id
        assert delivered["data"]["message"]["id"] == message_id

        # Nothing else was queued for B before this pong
        ws_b.send_json({"type": "ping", "request_id": "after"})
        assert ws_b.receive_json()["type"] == "pong"


def test_resend_over_websocket_is_acknowledged_as_duplicate(client, auth_headers):
    chat_id = make_chat(client, auth_headers)
    frame = {
        "type": "message.send",
        "data": {"chat_id": chat_id, "content": "once", "correlation_id": "dup-1", "request_bot_reply": False},
    }

    with client.websocket_connect(ws_url()) as ws:
        ws.receive_json()
        subscribe(ws, chat_id)
        ws.send_json(frame)
        assert ws.receive_json()["type"] == "message.new"
        first_ack = ws.receive_json()

        ws.send_json(frame)
        second_ack = ws.receive_json()

    assert second_ack["type"] == "message.ack"
    assert second_ack["data"]["duplicate"] is True
    assert second_ack["data"]["message"]["id"] == first_ack["data"]["message"]["id"]


def test_typing_is_not_echoed_to_sender(client, auth_headers):
    chat_id = make_chat(client, auth_headers)

    with client.websocket_connect(ws_url(device_id="a")) as ws_a, client.websocket_connect(ws_url(device_id="b")) as ws_b:
        ws_a.receive_json()
        ws_b.receive_json()
        subscribe(ws_a, chat_id)
        subscribe(ws_b, chat_id)

        ws_a.send_json({"type": "typing", "data": {"chat_id": chat_id, "is_typing": True}})

        typing = ws_b.receive_json()
        assert typing["type"] == "typing"
        assert typing["data"] == {"is_typing": True, "actor": "user-1"}

        ws_a.send_json({"type": "ping"})
        assert ws_a.receive_json()["type"] == "pong"


def test_chat_created_over_websocket_reaches_other_devices(client):
    with client.websocket_connect(ws_url(device_id="a")) as ws_a, client.websocket_connect(ws_url(device_id="b")) as ws_b:
        ws_a.receive_json()
        ws_b.receive_json()

        ws_a.send_json({"type": "chat.create", "data": {"title": "From the phone"}, "request_id": "c-1"})

        created = ws_a.receive_json()
        assert created["type"] == "chat.created"
        assert created["request_id"] == "c-1"
        chat_id = created["chat_id"]
        assert created["data"]["chat"]["title"] == "From the phone"

        elsewhere = ws_b.receive_json()
        assert elsewhere["type"] == "chat.created"
        assert elsewhere["chat_id"] == chat_id


def test_subscribing_to_someone_elses_chat_fails(client, other_headers):
    chat_id = make_chat(client, other_headers, title="Not yours")

    with client.websocket_connect(ws_url()) as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe", "data": {"chat_id": chat_id}, "request_id": "s-1"})
        error = ws.receive_json()

    assert error["type"] == "error"
    assert error["request_id"] == "s-1"
    assert error["data"]["code"] == "chat_not_found"


def test_malformed_frame_reports_validation_error(client):
    with client.websocket_connect(ws_url()) as ws:
        ws.receive_json()
        ws.send_text("{not json")
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "validation_error"

        ws.send_json({"type": "launch.rockets"})
        assert ws.receive_json()["data"]["code"] == "validation_error"


class StubSocket:
    """Server-side socket double; frames come from ``inbox``, ``None`` means the client hung up"""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTING
        self.inbox = asyncio.Queue()
        self.outbox = []
        self.closed_with = None

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED

    async def receive_text(self):
        raw = await self.inbox.get()
        if raw is None:
            self.client_state = WebSocketState.DISCONNECTED
            raise WebSocketDisconnect(code=1000)
        return raw

    async def send_json(self, data):
        self.outbox.append(data)

    async def close(self, code=1000, reason=None):
        self.closed_with = code


def connection_tasks_left():
    return sorted(
        task.get_coro().__name__
        for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__name__ in CONNECTION_TASKS
    )


@pytest.mark.asyncio
async def test_cancelled_connection_leaves_no_tasks_behind(service):
    socket = StubSocket()
    endpoint = asyncio.create_task(
        websocket_endpoint(socket, token=create_access_token("user-1"), device_id="laptop", service=service)
    )
    await wait_until(lambda: socket.outbox)
    assert socket.outbox[0]["type"] == "connected"
    assert connection_tasks_left() == sorted(CONNECTION_TASKS)

    endpoint.cancel()
    with pytest.raises(asyncio.CancelledError):
        await endpoint

    assert connection_tasks_left() == []
    assert service.router.stats()["sessions"] == 0
    # The writer drained and closed the socket itself
    assert socket.closed_with == 1000


@pytest.mark.asyncio
async def test_client_hang_up_ends_connection_cleanly(service):
    socket = StubSocket()
    endpoint = asyncio.create_task(
        websocket_endpoint(socket, token=create_access_token("user-1"), device_id="laptop", service=service)
    )
    await wait_until(lambda: socket.outbox)
    await socket.inbox.put('{"type": "ping", "request_id": "p-1"}')
    await wait_until(lambda: len(socket.outbox) == 2)

    await socket.inbox.put(None)
    await asyncio.wait_for(endpoint, timeout=2)

    assert socket.outbox[1] == {"type": "pong", "data": {}, "request_id": "p-1"}
    assert connection_tasks_left() == []
    assert service.router.stats()["sessions"] == 0
    # No close frame goes to a client that is already gone
    assert socket.closed_with is None
