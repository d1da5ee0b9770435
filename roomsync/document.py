"""Shared room document kept in rooms.code_content.

Every edit overwrites the whole text and every client converges on whichever
write the store committed last. There is no merge: an edit that races with a
later-committed one is lost. Clients that need stronger guarantees need a
different contract, not a patch here.
"""
import inspect

from roomsync.errors import BackendError, SyncWriteError
from roomsync.logger import setup_logger
from roomsync.model import Room

logger = setup_logger(name="RoomSync")


class DocumentSync:
    def __init__(self, client, room_id, initial_text=""):
        self.client = client
        self.room_id = room_id
        self._text = initial_text or ""
        # Texts this client wrote whose feed echo has not arrived yet, oldest first
        self._pending = []
        self._listeners = []
        self.channel = None
        self.closed = False

    @property
    def text(self):
        return self._text

    def add_listener(self, callback):
        self._listeners.append(callback)

    def start(self):
        if self.channel is not None:
            return self
        self.channel = self.client.channel(f"room-{self.room_id}").on(
            "UPDATE", Room.__tablename__, self._on_room_update, filter={"id": self.room_id},
        ).subscribe()
        return self

    def stop(self):
        self.closed = True
        if self.channel is not None:
            self.client.remove_channel(self.channel)
            self.channel = None

    async def _on_room_update(self, change, record):
        if self.closed:
            return
        new_text = record.get("code_content")
        if new_text is None:
            return
        await self.on_remote_change(new_text)

    async def apply_local_edit(self, new_text):
        """Show the edit locally, then persist the full text.

        A failed write raises SyncWriteError and leaves the local text as edited.
        """
        self._text = new_text
        self._pending.append(new_text)
        try:
            await self.client.update(Room.__tablename__, {"code_content": new_text}, id=self.room_id)
        except BackendError as e:
            self._pending.remove(new_text)
            logger.error(f"Failed to save code for room {self.room_id}: {e}")
            raise SyncWriteError("Could not save your changes. Check your connection and try again.") from e

    async def on_remote_change(self, new_text):
        """Adopt text observed on the feed. Never writes it back."""
        if self.closed:
            return False
        if new_text in self._pending:
            # Echo of our own write: everything queued before it has committed too
            index = self._pending.index(new_text)
            del self._pending[:index + 1]
            if self._pending:
                # A newer local write is still on its way; showing this one would flicker backwards
                return False
        if new_text == self._text:
            return False
        self._text = new_text
        for listener in list(self._listeners):
            result = listener(new_text)
            if inspect.isawaitable(result):
                await result
        return True
