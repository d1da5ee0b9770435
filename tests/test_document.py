import pytest

from roomsync.document import DocumentSync
from roomsync.errors import BackendError, SyncWriteError


async def _room(client, text="a"):
    row = await client.insert("rooms", {"name": "Pairing", "created_by": "x", "code_content": text})
    return row["id"]


@pytest.fixture
def two_clients(make_client):
    return make_client(), make_client()


@pytest.mark.asyncio
async def test_local_edit_reaches_other_participant(two_clients):
    x_client, y_client = two_clients
    room_id = await _room(x_client)
    x = DocumentSync(x_client, room_id, "a").start()
    y = DocumentSync(y_client, room_id, "a").start()
    received = []
    y.add_listener(received.append)

    await x.apply_local_edit("a + b")
    assert x.text == "a + b"
    await y_client.poll_once()

    assert y.text == "a + b"
    assert received == ["a + b"]
    assert (await x_client.get("rooms", room_id))["code_content"] == "a + b"


@pytest.mark.asyncio
async def test_concurrent_writes_converge_on_last_commit(two_clients):
    x_client, y_client = two_clients
    room_id = await _room(x_client, "a")
    x = DocumentSync(x_client, room_id, "a").start()
    y = DocumentSync(y_client, room_id, "a").start()

    # Neither has observed the other's write yet
    await x.apply_local_edit("ab")
    await y.apply_local_edit("ac")
    await x_client.poll_once()
    await y_client.poll_once()

    assert x.text == "ac"
    assert y.text == "ac"


@pytest.mark.asyncio
async def test_own_echo_does_not_roll_back_newer_local_text(client):
    room_id = await _room(client)
    doc = DocumentSync(client, room_id, "a").start()
    changes = []
    doc.add_listener(changes.append)

    await doc.apply_local_edit("ab")
    await doc.apply_local_edit("abc")
    await client.poll_once()

    assert doc.text == "abc"
    assert changes == []


@pytest.mark.asyncio
async def test_remote_change_is_never_written_back(two_clients, monkeypatch):
    x_client, y_client = two_clients
    room_id = await _room(x_client)
    x = DocumentSync(x_client, room_id, "a").start()
    DocumentSync(y_client, room_id, "a").start()
    writes = []
    original_update = y_client.update

    async def spy(*args, **kwargs):
        writes.append(args)
        return await original_update(*args, **kwargs)

    monkeypatch.setattr(y_client, "update", spy)
    await x.apply_local_edit("print('hi')")
    await y_client.poll_once()

    assert writes == []


@pytest.mark.asyncio
async def test_failed_write_keeps_local_text(client, monkeypatch):
    room_id = await _room(client)
    doc = DocumentSync(client, room_id, "a").start()

    async def broken(*args, **kwargs):
        raise BackendError("offline")

    monkeypatch.setattr(client, "update", broken)
    with pytest.raises(SyncWriteError):
        await doc.apply_local_edit("ab")

    assert doc.text == "ab"


@pytest.mark.asyncio
async def test_changes_after_stop_are_discarded(two_clients):
    x_client, y_client = two_clients
    room_id = await _room(x_client)
    x = DocumentSync(x_client, room_id, "a").start()
    y = DocumentSync(y_client, room_id, "a").start()

    y.stop()
    await x.apply_local_edit("late")
    await y_client.poll_once()
    assert await y.on_remote_change("later") is False

    assert y.text == "a"


@pytest.mark.asyncio
async def test_updates_to_other_rooms_are_ignored(client):
    room_id = await _room(client)
    other_id = await _room(client)
    doc = DocumentSync(client, room_id, "a").start()

    await client.update("rooms", {"code_content": "elsewhere"}, id=other_id)
    await client.poll_once()

    assert doc.text == "a"
