import asyncio
from roomsync import Portal, Settings


async def main():
    settings = Settings(db_path="example.db", poll_interval=0.2)
    alice = await Portal(settings).start()
    bob = await Portal(settings).start()

    room = await alice.rooms.create_room("Linked lists", created_by="alice", username="Alice", language="python")
    alice_session = await alice.open_room(room.id, "alice", "Alice")
    bob_session = await bob.open_room(room.id, "bob", "Bob")

    bob_session.document.add_listener(lambda text: print(f"Bob sees:\n{text}"))

    await alice_session.edit(room.code_content + "class Node:\n    pass\n")
    await asyncio.sleep(1)

    await bob_session.edit(bob_session.text + "\n# bob was here\n")
    await asyncio.sleep(1)
    print(f"Alice sees:\n{alice_session.text}")

    # Camera is optional; without one the room stays code-only
    await alice_session.start_media(video=True, audio=False)

    await bob_session.close()
    await alice_session.close()
    await bob.stop()
    await alice.stop()


if __name__ == "__main__":
    asyncio.run(main())
