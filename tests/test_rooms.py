import pytest

from roomsync.errors import BackendError, NotFound
from roomsync.rooms import RoomService


@pytest.fixture
def rooms(client):
    return RoomService(client)


@pytest.mark.asyncio
async def test_creator_is_first_participant_and_host(rooms):
    room = await rooms.create_room("Graphs", created_by="alice", username="Alice", language="python")

    assert room.code_content == "// Graphs\n// Language: python\n\n"
    assert room.max_participants == 4
    participants = await rooms.list_participants(room.id)
    assert [(p.user_id, p.is_host) for p in participants] == [("alice", True)]


@pytest.mark.asyncio
async def test_room_name_is_required(rooms):
    with pytest.raises(ValueError):
        await rooms.create_room("  ", created_by="alice", username="Alice")


@pytest.mark.asyncio
async def test_joining_twice_keeps_one_membership(rooms):
    room = await rooms.create_room("Graphs", created_by="alice", username="Alice")

    first = await rooms.join_room(room.id, "bob", "Bob")
    second = await rooms.join_room(room.id, "bob", "Bob")

    assert first.id == second.id
    assert not first.is_host
    assert len(await rooms.list_participants(room.id)) == 2


@pytest.mark.asyncio
async def test_join_unknown_room(rooms):
    with pytest.raises(NotFound):
        await rooms.join_room("nope", "bob", "Bob")


@pytest.mark.asyncio
async def test_leave_removes_membership(rooms):
    room = await rooms.create_room("Graphs", created_by="alice", username="Alice")
    await rooms.join_room(room.id, "bob", "Bob")

    assert await rooms.leave_room(room.id, "bob") is True
    assert await rooms.leave_room(room.id, "bob") is False
    assert [p.user_id for p in await rooms.list_participants(room.id)] == ["alice"]


@pytest.mark.asyncio
async def test_list_active_rooms_skips_inactive(rooms, client):
    kept = await rooms.create_room("Kept", created_by="alice", username="Alice")
    closed = await rooms.create_room("Closed", created_by="alice", username="Alice")
    await client.update("rooms", {"is_active": False}, id=closed.id)

    assert [room.id for room in await rooms.list_active_rooms()] == [kept.id]


@pytest.mark.asyncio
async def test_read_failures_look_like_no_data(rooms, client, monkeypatch):
    async def broken(*args, **kwargs):
        raise BackendError("offline")

    monkeypatch.setattr(client, "select", broken)
    monkeypatch.setattr(client, "get", broken)

    assert await rooms.list_active_rooms() == []
    assert await rooms.list_participants("any") == []
    assert await rooms.get_room("any") is None


@pytest.mark.asyncio
async def test_update_cursor(rooms):
    room = await rooms.create_room("Graphs", created_by="alice", username="Alice")

    participant = await rooms.update_cursor(room.id, "alice", {"line": 3, "column": 7})

    assert participant.cursor_position == {"line": 3, "column": 7}
    assert await rooms.update_cursor(room.id, "ghost", {"line": 1}) is None
