import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from backend import MemoryBackend, RedisBackend, create_backend, dm_key


@pytest_asyncio.fixture(params=["memory", "redis"])
async def backend(request):
    if request.param == "memory":
        yield MemoryBackend(dm_history_max=3)
        return
    client = FakeRedis(decode_responses=True)
    try:
        yield RedisBackend(client=client, dm_history_max=3)
    finally:
        await client.flushall()


def test_dm_key_is_order_independent():
    assert dm_key("bob", "alice") == dm_key("alice", "bob") == "alice::bob"


def test_create_backend_rejects_unknown_kind():
    assert isinstance(create_backend("memory"), MemoryBackend)
    with pytest.raises(ValueError):
        create_backend("sqlite")


@pytest.mark.asyncio
async def test_rooms_lifecycle(backend):
    assert await backend.ensure_room("general") is True
    assert await backend.ensure_room("general") is False
    assert "general" in await backend.list_rooms()

    assert await backend.delete_room("general") is True
    assert "general" not in await backend.list_rooms()


@pytest.mark.asyncio
async def test_message_ids_increase(backend):
    await backend.ensure_room("general")
    first = await backend.create_message(content="a", sender="alice", room="general")
    second = await backend.create_message(content="b", sender="alice", room="general")
    assert int(second.id) > int(first.id)
    assert first.read_by == []
    assert first.created_at > 0


@pytest.mark.asyncio
async def test_room_history_is_oldest_first_and_limited(backend):
    await backend.ensure_room("general")
    for i in range(5):
        await backend.create_message(content=f"m{i}", sender="alice", room="general")

    history = await backend.room_history("general", 2)
    assert [m.content for m in history] == ["m3", "m4"]
    assert await backend.room_history("general", 0) == []


@pytest.mark.asyncio
async def test_delete_room_purges_only_that_room(backend):
    await backend.ensure_room("a")
    await backend.ensure_room("b")
    gone = await backend.create_message(content="x", sender="alice", room="a")
    await backend.create_message(content="y", sender="alice", room="b")

    await backend.delete_room("a", purge_messages=True)

    assert await backend.get_message(gone.id) is None
    assert await backend.room_history("a", 50) == []
    assert [m.content for m in await backend.room_history("b", 50)] == ["y"]


@pytest.mark.asyncio
async def test_delete_room_can_keep_messages(backend):
    await backend.ensure_room("a")
    await backend.create_message(content="x", sender="alice", room="a")
    await backend.delete_room("a", purge_messages=False)
    assert [m.content for m in await backend.room_history("a", 50)] == ["x"]


@pytest.mark.asyncio
async def test_add_reader_only_once(backend):
    await backend.ensure_room("general")
    message = await backend.create_message(content="hi", sender="bob", room="general")

    updated = await backend.add_reader(message.id, "alice")
    assert updated.read_by == ["alice"]
    assert await backend.add_reader(message.id, "alice") is None
    updated = await backend.add_reader(message.id, "carol")
    assert updated.read_by == ["alice", "carol"]
    assert await backend.add_reader("404", "alice") is None


@pytest.mark.asyncio
async def test_dm_history_is_capped(backend):
    for i in range(5):
        sender, to = ("alice", "bob") if i % 2 == 0 else ("bob", "alice")
        await backend.create_message(content=f"d{i}", sender=sender, to=to, is_private=True)

    history = await backend.dm_history("bob", "alice", 50)
    assert [m.content for m in history] == ["d2", "d3", "d4"]
    assert all(m.is_private for m in history)
    assert await backend.dm_history("alice", "carol", 50) == []


@pytest.mark.asyncio
async def test_user_records(backend):
    assert await backend.get_user("alice") is None
    await backend.touch_user("alice", "c1")
    user = await backend.get_user("alice")
    assert user["connection_id"] == "c1"
    await backend.touch_user("alice", None)
    assert (await backend.get_user("alice"))["connection_id"] == ""
