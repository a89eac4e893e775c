from conftest import poll_until


def create_chat(client, headers, **body):
    response = client.post("/chats", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_requires_authentication(client):
    assert client.get("/chats").status_code in (401, 403)
    bad = client.get("/chats", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


def test_first_message_gets_bot_reply(client, auth_headers):
    chat = create_chat(client, auth_headers, initial_message={"content": "Hello"})

    assert chat["id"].startswith("chat_")
    assert chat["message_count"] == 1
    first = chat["messages"][0]
    assert first["role"] == "user"
    assert first["status"] == "sent"
    assert first["content"] == "Hello"

    detail = poll_until(
        lambda: client.get(f"/chats/{chat['id']}", headers=auth_headers).json(),
        lambda body: body["message_count"] == 2,
    )
    roles = [message["role"] for message in detail["messages"]]
    assert roles == ["user", "bot"]
    assert detail["messages"][1]["content"] == "Hello there"
    assert detail["messages"][1]["reply_to_id"] == first["id"]


def test_create_is_idempotent_with_correlation_id(client, auth_headers):
    body = {"title": "Once", "correlation_id": "create-abc"}
    first = create_chat(client, auth_headers, **body)

    again = client.post("/chats", json=body, headers=auth_headers)

    assert again.status_code == 200
    assert again.json()["id"] == first["id"]
    assert client.get("/chats", headers=auth_headers).json()["total"] == 1


def test_chats_are_private(client, auth_headers, other_headers):
    chat = create_chat(client, auth_headers, title="Mine")

    response = client.get(f"/chats/{chat['id']}", headers=other_headers)

    assert response.status_code == 404
    assert response.json()["code"] == "chat_not_found"
    assert client.get("/chats", headers=other_headers).json()["chats"] == []


def test_send_message_and_resend(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Notes")
    body = {"content": "Remember milk", "correlation_id": "send-1", "request_bot_reply": False}

    first = client.post(f"/chats/{chat['id']}/messages", json=body, headers=auth_headers)
    second = client.post(f"/chats/{chat['id']}/messages", json=body, headers=auth_headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["message"]["id"] == first.json()["message"]["id"]

    page = client.get(f"/chats/{chat['id']}/messages", headers=auth_headers).json()
    assert len(page["messages"]) == 1
    assert page["has_more"] is False


def test_message_pagination(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Long")
    for index in range(5):
        client.post(
            f"/chats/{chat['id']}/messages",
            json={"content": f"m{index}", "request_bot_reply": False},
            headers=auth_headers,
        )

    first = client.get(f"/chats/{chat['id']}/messages?limit=2&order=asc", headers=auth_headers).json()
    assert [message["seq"] for message in first["messages"]] == [1, 2]
    assert first["has_more"] is True

    rest = client.get(
        f"/chats/{chat['id']}/messages?limit=10&order=asc&after={first['next_cursor']}",
        headers=auth_headers,
    ).json()
    assert [message["seq"] for message in rest["messages"]] == [3, 4, 5]


def test_update_conflict_returns_current_state(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Draft")

    applied = client.patch(f"/chats/{chat['id']}", json={"version": 1, "title": "A"}, headers=auth_headers)
    stale = client.patch(f"/chats/{chat['id']}", json={"version": 1, "title": "B"}, headers=auth_headers)

    assert applied.status_code == 200
    assert applied.json()["version"] == 2
    assert stale.status_code == 409
    body = stale.json()
    assert body["code"] == "conflict"
    assert body["current"]["title"] == "A"
    assert body["details"]["conflicting_fields"] == ["title"]


def test_status_receipts_and_invalid_transition(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Receipts")
    sent = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "ping", "request_bot_reply": False},
        headers=auth_headers,
    ).json()["message"]
    url = f"/chats/{chat['id']}/messages/{sent['id']}/status"

    read = client.post(url, json={"status": "read"}, headers=auth_headers)
    assert read.status_code == 200
    assert read.json()["status"] == "read"

    failed = client.post(url, json={"status": "failed"}, headers=auth_headers)
    assert failed.status_code == 422
    assert failed.json()["code"] == "invalid_status_transition"


def test_edit_react_and_delete_message(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Edits")
    sent = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "teh", "request_bot_reply": False},
        headers=auth_headers,
    ).json()["message"]
    base = f"/chats/{chat['id']}/messages/{sent['id']}"

    edited = client.patch(base, json={"content": "the"}, headers=auth_headers).json()
    assert edited["content"] == "the"
    assert edited["edit_history"][0]["content"] == "teh"

    reacted = client.post(f"{base}/reactions", json={"emoji": "🎉"}, headers=auth_headers).json()
    assert reacted["reactions"] == {"🎉": ["user-1"]}

    assert client.delete(base, headers=auth_headers).status_code == 204
    assert client.get(f"/chats/{chat['id']}", headers=auth_headers).json()["message_count"] == 0


def test_delete_chat_needs_confirmation(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Bye")

    refused = client.delete(f"/chats/{chat['id']}", headers=auth_headers)
    assert refused.status_code == 400
    assert refused.json()["code"] == "validation_error"

    deleted = client.delete(f"/chats/{chat['id']}?confirm=true", headers=auth_headers)
    assert deleted.status_code == 200
    assert deleted.json() == {"chat_id": chat["id"], "deleted_message_count": 0}
    assert client.get(f"/chats/{chat['id']}", headers=auth_headers).status_code == 404


def test_search_endpoint(client, auth_headers):
    chat = create_chat(client, auth_headers, title="Holiday ideas")

    response = client.get("/chats/search?q=holiday", headers=auth_headers)

    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0]["chat_id"] == chat["id"]
    assert results[0]["type"] == "chat"


def test_folders(client, auth_headers):
    folder = client.post("/folders", json={"name": "Work"}, headers=auth_headers)
    assert folder.status_code == 201
    folder_id = folder.json()["id"]
    chat = create_chat(client, auth_headers, title="Standup", folder_id=folder_id)
    assert chat["folder_id"] == folder_id

    listed = client.get(f"/chats?folder_id={folder_id}", headers=auth_headers).json()
    assert [item["id"] for item in listed["chats"]] == [chat["id"]]

    removed = client.delete(f"/folders/{folder_id}", headers=auth_headers).json()
    assert removed == {"folder_id": folder_id, "detached_chats": 1}
    assert client.get("/folders", headers=auth_headers).json() == []


def test_unknown_folder_is_rejected(client, auth_headers):
    response = client.post("/chats", json={"title": "Lost", "folder_id": "fld_missing"}, headers=auth_headers)
    assert response.status_code == 400


def test_health_and_root(client):
    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "healthy"
    assert "realtime" in body["services"]

    assert client.get("/").json()["websocket_url"] == "/ws"


def test_request_id_is_echoed(client):
    response = client.get("/", headers={"X-Request-Id": "req-abc"})
    assert response.headers["x-request-id"] == "req-abc"
    assert client.get("/").headers["x-request-id"].startswith("req_")
