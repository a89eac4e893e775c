import asyncio

import pytest
from sqlalchemy import event

from app.core.exceptions import ChatNotFound, ConflictError, ValidationError
from app.crud import chat as chat_crud
from app.crud import message as message_crud
from app.models.enums import MessageRole, MessageStatus
from app.schemas.chat import ChatCreate, ChatUpdate, MessageCreate
from app.schemas.events import EventType

from conftest import drain_events


@pytest.mark.asyncio
async def test_create_with_initial_message_round_trip(service, db):
    result = await service.create_chat(
        db,
        "user-1",
        ChatCreate(initial_message=MessageCreate(content="Hello", request_bot_reply=False)),
    )

    assert result.chat.message_count == 1
    assert result.chat.title == "New Chat"
    rows, _ = message_crud.list_messages(db, result.chat.id, order="asc")
    assert len(rows) == 1
    assert rows[0].role == MessageRole.user.value
    assert rows[0].status == MessageStatus.sent.value
    assert rows[0].content == "Hello"
    assert rows[0].seq == 1


@pytest.mark.asyncio
async def test_create_with_correlation_id_is_idempotent(service, db):
    data = ChatCreate(
        title="Trip",
        correlation_id="create-1",
        initial_message=MessageCreate(content="Plan a trip", request_bot_reply=False),
    )

    first = await service.create_chat(db, "user-1", data)
    second = await service.create_chat(db, "user-1", data)

    assert second.duplicate
    assert second.chat.id == first.chat.id
    assert second.message.id == first.message.id
    chats, total = service.list_chats(db, "user-1")
    assert total == 1


@pytest.mark.asyncio
async def test_title_and_tags_are_cleaned(service, db):
    result = await service.create_chat(db, "user-1", ChatCreate(title="  Groceries  ", tags=["food", " food ", ""]))

    assert result.chat.title == "Groceries"
    assert result.chat.tags == ["food"]

    with pytest.raises(ValidationError):
        await service.create_chat(db, "user-1", ChatCreate(title="x" * 101))
    with pytest.raises(ValidationError):
        await service.create_chat(db, "user-1", ChatCreate(title="Tags", tags=["t" * 51]))


@pytest.mark.asyncio
async def test_other_users_chat_looks_missing(service, db):
    result = await service.create_chat(db, "user-1", ChatCreate(title="Private"))

    with pytest.raises(ChatNotFound):
        service.get_chat(db, "user-2", result.chat.id)
    with pytest.raises(ChatNotFound):
        service.get_chat(db, "user-1", "chat_does_not_exist")


@pytest.mark.asyncio
async def test_concurrent_updates_from_same_base_conflict(service, session_factory):
    with session_factory() as db:
        chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Original"))).chat.id

    async def rename(title):
        with session_factory() as db:
            try:
                chat = await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=1, title=title))
                return ("applied", chat.title)
            except ConflictError as e:
                return ("conflict", e.current["title"])

    outcomes = await asyncio.gather(rename("A"), rename("B"))

    applied = [title for outcome, title in outcomes if outcome == "applied"]
    conflicts = [title for outcome, title in outcomes if outcome == "conflict"]
    assert len(applied) == 1
    assert len(conflicts) == 1
    # The loser is told the winner's title
    assert conflicts[0] == applied[0]

    with session_factory() as db:
        chat = chat_crud.require_chat(db, chat_id, "user-1")
        assert chat.title == applied[0]
        assert chat.version == 2


@pytest.mark.asyncio
async def test_stale_update_of_untouched_field_is_accepted(service, db):
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Notes"))).chat.id

    await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=1, title="Renamed"))
    chat = await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=1, is_favorite=True))

    assert chat.title == "Renamed"
    assert chat.is_favorite is True
    assert chat.version == 3
    assert chat.field_versions == {"title": 2, "is_favorite": 3}


@pytest.mark.asyncio
async def test_version_from_the_future_conflicts(service, db):
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Notes"))).chat.id

    with pytest.raises(ConflictError) as error:
        await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=7, title="Nope"))
    assert error.value.current_version == 1


@pytest.mark.asyncio
async def test_null_title_rejected(service, db):
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Notes"))).chat.id

    with pytest.raises(ValidationError):
        await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=1, title=None))


@pytest.mark.asyncio
async def test_update_is_published_to_subscribers(service, db):
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Notes"))).chat.id
    session = service.router.register("user-1", "tablet")
    service.subscribe(session, chat_id)

    await service.update_chat(db, "user-1", chat_id, ChatUpdate(version=1, tags=["work"]))

    events = await drain_events(session)
    assert [event.type for event in events] == [EventType.CHAT_UPDATED]
    assert events[0].data["changed_fields"] == ["tags"]
    assert events[0].data["chat"]["tags"] == ["work"]


@pytest.mark.asyncio
async def test_delete_requires_confirmation(service, db):
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Temp"))).chat.id

    with pytest.raises(ValidationError):
        await service.delete_chat(db, "user-1", chat_id)


@pytest.mark.asyncio
async def test_delete_removes_chat_and_subscriptions(service, db):
    result = await service.create_chat(
        db,
        "user-1",
        ChatCreate(title="Temp", initial_message=MessageCreate(content="bye", request_bot_reply=False)),
    )
    chat_id = result.chat.id
    session = service.router.register("user-1", "tablet")
    service.subscribe(session, chat_id)

    deleted = await service.delete_chat(db, "user-1", chat_id, confirm=True)

    assert deleted == 1
    assert service.router.subscribers(chat_id) == set()
    events = await drain_events(session)
    assert [event.type for event in events] == [EventType.CHAT_DELETED]
    with pytest.raises(ChatNotFound):
        service.get_chat(db, "user-1", chat_id)


@pytest.mark.asyncio
async def test_list_filters_by_tag_and_favorite(service, db):
    work = (await service.create_chat(db, "user-1", ChatCreate(title="Work", tags=["work"]))).chat.id
    await service.create_chat(db, "user-1", ChatCreate(title="Home", tags=["home"]))
    await service.update_chat(db, "user-1", work, ChatUpdate(version=1, is_favorite=True))

    tagged, total = service.list_chats(db, "user-1", tag="work")
    assert [chat.id for chat in tagged] == [work]
    assert total == 1

    favorites, _ = service.list_chats(db, "user-1", is_favorite=True)
    assert [chat.id for chat in favorites] == [work]


@pytest.mark.asyncio
async def test_list_pages_in_the_database(service, db, engine):
    for index in range(5):
        await service.create_chat(db, "user-1", ChatCreate(title=f"Chat {index}"))
    await service.create_chat(db, "user-2", ChatCreate(title="Someone else"))
    everything, _ = service.list_chats(db, "user-1")

    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    try:
        page, total = service.list_chats(db, "user-1", limit=2, offset=1)
    finally:
        event.remove(engine, "before_cursor_execute", record)

    assert total == 5
    assert [chat.id for chat in page] == [chat.id for chat in everything[1:3]]
    assert any("LIMIT" in statement and "OFFSET" in statement for statement in statements)


@pytest.mark.asyncio
async def test_search_matches_titles_and_messages(service, db):
    recipes = (await service.create_chat(db, "user-1", ChatCreate(title="Pasta recipes"))).chat.id
    other = (await service.create_chat(db, "user-1", ChatCreate(title="Misc"))).chat.id
    await service.send_message(
        db, "user-1", other, MessageCreate(content="I cooked pasta yesterday", request_bot_reply=False)
    )
    await service.create_chat(db, "user-2", ChatCreate(title="Pasta for someone else"))

    hits = service.search(db, "user-1", "pasta")

    assert hits[0]["type"] == "chat"
    assert hits[0]["chat_id"] == recipes
    assert {hit["chat_id"] for hit in hits} == {recipes, other}
    message_hit = next(hit for hit in hits if hit["type"] == "message")
    assert "pasta" in message_hit["snippet"]

    with pytest.raises(ValidationError):
        service.search(db, "user-1", "   ")


@pytest.mark.asyncio
async def test_deleting_folder_keeps_its_chats(service, db):
    folder = service.create_folder(db, "user-1", "Projects")
    folder_id = folder.id
    chat_id = (await service.create_chat(db, "user-1", ChatCreate(title="Plan", folder_id=folder_id))).chat.id

    detached = service.delete_folder(db, "user-1", folder_id)

    assert detached == 1
    chat, _ = service.get_chat(db, "user-1", chat_id)
    assert chat.folder_id is None
    assert service.list_folders(db, "user-1") == []
