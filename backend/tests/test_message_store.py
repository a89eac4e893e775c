import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    EditNotAllowed, EditWindowExpired, InvalidStatusTransition, MessageNotFound, ValidationError
)
from app.core.ids import utcnow
from app.crud import chat as chat_crud
from app.crud import message as message_crud
from app.models.enums import MessageRole, MessageStatus
from app.schemas.chat import ChatCreate, MessageCreate
from app.schemas.events import EventType

from conftest import drain_events


async def new_chat(service, db, user_id="user-1", title="Test chat"):
    result = await service.create_chat(db, user_id, ChatCreate(title=title))
    return result.chat.id


def quiet(content, **kwargs):
    return MessageCreate(content=content, request_bot_reply=False, **kwargs)


@pytest.mark.asyncio
async def test_concurrent_sends_get_strictly_increasing_sequence(service, session_factory):
    with session_factory() as db:
        chat_id = await new_chat(service, db)

    async def send(index):
        with session_factory() as db:
            await service.send_message(db, "user-1", chat_id, quiet(f"message {index}"))

    await asyncio.gather(*(send(index) for index in range(20)))

    with session_factory() as db:
        rows, has_more = message_crud.list_messages(db, chat_id, limit=100, order="asc")
        seqs = [row.seq for row in rows]
        chat = chat_crud.require_chat(db, chat_id, "user-1")
        assert chat.message_count == 20

    assert not has_more
    assert seqs == list(range(1, 21))


@pytest.mark.asyncio
async def test_cursor_pagination_is_stable_during_appends(service, session_factory):
    with session_factory() as db:
        chat_id = await new_chat(service, db)
        for index in range(10):
            await service.send_message(db, "user-1", chat_id, quiet(f"before {index}"))

    seen = []
    cursor = None
    appended = 0
    while True:
        if appended < 5:
            with session_factory() as db:
                await service.send_message(db, "user-1", chat_id, quiet(f"during {appended}"))
            appended += 1
        with session_factory() as db:
            rows, has_more, next_cursor = service.list_messages(
                db, "user-1", chat_id, limit=3, after=cursor, order="asc"
            )
            seen.extend((row.id, row.seq) for row in rows)
        if not has_more:
            break
        cursor = next_cursor

    ids = [message_id for message_id, _ in seen]
    assert len(ids) == len(set(ids))
    assert [seq for _, seq in seen] == list(range(1, 16))


@pytest.mark.asyncio
async def test_list_newest_first_with_before_cursor(service, db):
    chat_id = await new_chat(service, db)
    for index in range(5):
        await service.send_message(db, "user-1", chat_id, quiet(f"m{index}"))

    first, has_more, cursor = service.list_messages(db, "user-1", chat_id, limit=2)
    assert [row.seq for row in first] == [5, 4]
    assert has_more

    second, _, _ = service.list_messages(db, "user-1", chat_id, limit=2, before=cursor)
    assert [row.seq for row in second] == [3, 2]


@pytest.mark.asyncio
async def test_before_and_after_together_are_rejected(service, db):
    chat_id = await new_chat(service, db)
    result = await service.send_message(db, "user-1", chat_id, quiet("only"))

    with pytest.raises(ValidationError):
        service.list_messages(db, "user-1", chat_id, before=result.message.id, after=result.message.id)


@pytest.mark.asyncio
async def test_resend_with_same_correlation_id_is_a_no_op(service, db):
    chat_id = await new_chat(service, db)

    first = await service.send_message(db, "user-1", chat_id, quiet("Hello", correlation_id="corr-1"))
    second = await service.send_message(db, "user-1", chat_id, quiet("Hello", correlation_id="corr-1"))

    assert not first.duplicate
    assert second.duplicate
    assert second.message.id == first.message.id
    rows, _ = message_crud.list_messages(db, chat_id, order="asc")
    assert len(rows) == 1
    assert chat_crud.require_chat(db, chat_id, "user-1").message_count == 1


@pytest.mark.asyncio
async def test_empty_and_oversized_content_rejected(service, db):
    chat_id = await new_chat(service, db)

    with pytest.raises(ValidationError):
        await service.send_message(db, "user-1", chat_id, quiet("   "))
    with pytest.raises(ValidationError):
        await service.send_message(db, "user-1", chat_id, quiet("x" * 4001))


def test_status_path_walks_every_intermediate_state():
    assert message_crud.plan_status_path(MessageStatus.sent, MessageStatus.read) == [
        MessageStatus.delivered,
        MessageStatus.read,
    ]
    assert message_crud.plan_status_path(MessageStatus.sending, MessageStatus.delivered) == [
        MessageStatus.sent,
        MessageStatus.delivered,
    ]


def test_status_never_moves_backwards():
    assert message_crud.plan_status_path(MessageStatus.read, MessageStatus.delivered) == []
    assert message_crud.plan_status_path(MessageStatus.delivered, MessageStatus.delivered) == []


@pytest.mark.parametrize(
    "current, requested",
    [
        (MessageStatus.failed, MessageStatus.sent),
        (MessageStatus.failed, MessageStatus.read),
        (MessageStatus.delivered, MessageStatus.failed),
        (MessageStatus.read, MessageStatus.failed),
    ],
)
def test_illegal_status_transitions(current, requested):
    with pytest.raises(InvalidStatusTransition):
        message_crud.plan_status_path(current, requested)


@pytest.mark.asyncio
async def test_status_updates_publish_each_step_in_order(service, db):
    chat_id = await new_chat(service, db)
    sent = await service.send_message(db, "user-1", chat_id, quiet("Read me"))
    message_id = sent.message.id

    observer = service.router.register("user-1", "phone")
    service.subscribe(observer, chat_id)

    message = await service.update_status(db, "user-1", chat_id, message_id, MessageStatus.read)
    assert message.status == MessageStatus.read.value

    events = await drain_events(observer)
    assert [event.type for event in events] == [EventType.STATUS_UPDATE, EventType.STATUS_UPDATE]
    assert [event.data["status"] for event in events] == ["delivered", "read"]

    # An older receipt arriving late changes nothing
    await service.update_status(db, "user-1", chat_id, message_id, MessageStatus.delivered)
    assert await drain_events(observer) == []


@pytest.mark.asyncio
async def test_failed_message_is_retried_as_new_attempt(service, db):
    chat_id = await new_chat(service, db)
    original = await service.send_message(db, "user-1", chat_id, quiet("Flaky", correlation_id="corr-f"))
    await service.update_status(db, "user-1", chat_id, original.message.id, MessageStatus.failed)

    retried = await service.retry_message(db, "user-1", chat_id, original.message.id, request_bot_reply=False)

    assert retried.message.id != original.message.id
    assert retried.message.correlation_id == "corr-f"
    assert retried.message.attempt == 2
    assert retried.message.status == MessageStatus.sent.value

    # Further resends now hit the successful attempt
    again = await service.send_message(db, "user-1", chat_id, quiet("Flaky", correlation_id="corr-f"))
    assert again.duplicate
    assert again.message.id == retried.message.id


@pytest.mark.asyncio
async def test_only_failed_messages_can_be_retried(service, db):
    chat_id = await new_chat(service, db)
    sent = await service.send_message(db, "user-1", chat_id, quiet("Fine"))

    with pytest.raises(ValidationError):
        await service.retry_message(db, "user-1", chat_id, sent.message.id)


@pytest.mark.asyncio
async def test_edit_keeps_history(service, db):
    chat_id = await new_chat(service, db)
    sent = await service.send_message(db, "user-1", chat_id, quiet("Helo"))

    edited = await service.edit_message(db, "user-1", chat_id, sent.message.id, "Hello")

    assert edited.content == "Hello"
    assert edited.edited_at is not None
    assert [entry["content"] for entry in edited.edit_history] == ["Helo"]


@pytest.mark.asyncio
async def test_bot_messages_cannot_be_edited(service, db):
    chat_id = await new_chat(service, db)
    chat = chat_crud.require_chat(db, chat_id, "user-1")
    bot_message = message_crud.append_message(db, chat, MessageRole.bot, "I am the bot")
    db.commit()

    with pytest.raises(EditNotAllowed):
        await service.edit_message(db, "user-1", chat_id, bot_message.id, "Hijacked")


@pytest.mark.asyncio
async def test_edit_window_expires(service, db):
    chat_id = await new_chat(service, db)
    sent = await service.send_message(db, "user-1", chat_id, quiet("Old news"))
    sent.message.created_at = utcnow() - timedelta(hours=25)
    db.commit()

    with pytest.raises(EditWindowExpired):
        await service.edit_message(db, "user-1", chat_id, sent.message.id, "New news")


@pytest.mark.asyncio
async def test_soft_delete_adjusts_count_and_hides_message(service, db):
    chat_id = await new_chat(service, db)
    keep = await service.send_message(db, "user-1", chat_id, quiet("keep"))
    drop = await service.send_message(db, "user-1", chat_id, quiet("drop"))

    await service.delete_message(db, "user-1", chat_id, drop.message.id)

    assert chat_crud.require_chat(db, chat_id, "user-1").message_count == 1
    visible, _, _ = service.list_messages(db, "user-1", chat_id)
    assert [row.id for row in visible] == [keep.message.id]
    everything, _, _ = service.list_messages(db, "user-1", chat_id, include_deleted=True)
    assert len(everything) == 2
    with pytest.raises(MessageNotFound):
        message_crud.get_message(db, chat_id, drop.message.id)


@pytest.mark.asyncio
async def test_soft_deleted_message_can_still_be_purged(service, db):
    chat_id = await new_chat(service, db)
    keep = await service.send_message(db, "user-1", chat_id, quiet("keep"))
    drop = await service.send_message(db, "user-1", chat_id, quiet("drop"))
    await service.delete_message(db, "user-1", chat_id, drop.message.id)

    await service.delete_message(db, "user-1", chat_id, drop.message.id, hard=True)

    everything, _, _ = service.list_messages(db, "user-1", chat_id, include_deleted=True)
    assert [row.id for row in everything] == [keep.message.id]
    # The soft delete already took it out of the count
    assert chat_crud.require_chat(db, chat_id, "user-1").message_count == 1
    with pytest.raises(MessageNotFound):
        await service.delete_message(db, "user-1", chat_id, drop.message.id, hard=True)


@pytest.mark.asyncio
async def test_reactions_toggle_per_user(service, db):
    chat_id = await new_chat(service, db)
    sent = await service.send_message(db, "user-1", chat_id, quiet("React to me"))

    reactions = await service.react(db, "user-1", chat_id, sent.message.id, "👍")
    assert reactions == {"👍": ["user-1"]}
    # Adding twice is idempotent
    assert await service.react(db, "user-1", chat_id, sent.message.id, "👍") == {"👍": ["user-1"]}
    assert await service.react(db, "user-1", chat_id, sent.message.id, "👍", add=False) == {}


@pytest.mark.asyncio
async def test_iter_messages_walks_whole_chat_in_order(service, db):
    chat_id = await new_chat(service, db)
    for index in range(7):
        await service.send_message(db, "user-1", chat_id, quiet(f"line {index}"))

    contents = [message.content for message in message_crud.iter_messages(db, chat_id, page_size=3)]
    assert contents == [f"line {index}" for index in range(7)]
