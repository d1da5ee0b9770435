"""Application bootstrap: one RealtimeClient, injected into everything built on it."""
from roomsync.battle import BattleService, BattleSession
from roomsync.config import Settings
from roomsync.core import RealtimeClient
from roomsync.document import DocumentSync
from roomsync.errors import MediaAccessError, NotFound
from roomsync.logger import setup_logger
from roomsync.rooms import RoomService
from roomsync.signaling import PeerSignalingRelay

logger = setup_logger(name="RoomSync")


class CodeRoomSession:
    """A user's stay in one collaborative room: shared document plus peer media.

    Every other participant gets a direct peer link, so a room of n people
    holds n - 1 links per client. max_participants is not enforced here.
    """

    def __init__(self, client, rooms, room_id, user_id, username, transport_factory, media_devices,
                 on_remote_track=None, on_peer_removed=None):
        self.client = client
        self.rooms = rooms
        self.room_id = room_id
        self.user_id = user_id
        self.username = username
        self.room = None
        self.membership = None
        self.document = None
        self.relay = PeerSignalingRelay(
            client, room_id, user_id, transport_factory, media_devices,
            on_remote_track=on_remote_track, on_peer_removed=on_peer_removed,
        )
        self.closed = False

    async def open(self):
        self.room = await self.rooms.get_room(self.room_id)
        if self.room is None:
            raise NotFound(f"Room {self.room_id} not found")
        self.membership = await self.rooms.join_room(self.room_id, self.user_id, self.username)
        self.document = DocumentSync(self.client, self.room_id, self.room.code_content).start()
        self.relay.start()
        return self

    @property
    def is_host(self):
        return bool(self.membership and self.membership.is_host)

    async def start_media(self, video=True, audio=True):
        """Start local capture. Returns None and keeps the session code-only if devices fail."""
        try:
            return await self.relay.start_local_capture(video=video, audio=audio)
        except MediaAccessError as e:
            logger.warning(f"{self.username} continues without media: {e}")
            return None

    async def connect_peers(self):
        """Offer a connection to every other participant."""
        links = []
        for participant in await self.rooms.list_participants(self.room_id):
            if participant.user_id == self.user_id or participant.user_id in self.relay.links:
                continue
            links.append(await self.relay.initiate_connection(participant.user_id))
        return links

    async def edit(self, new_text):
        await self.document.apply_local_edit(new_text)

    @property
    def text(self):
        return self.document.text if self.document is not None else ""

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.relay.teardown()
        if self.document is not None:
            self.document.stop()
        await self.rooms.leave_room(self.room_id, self.user_id)
        logger.info(f"{self.username} closed session in room {self.room_id}")


class Portal:
    """Owns the backend client for the lifetime of the application."""

    def __init__(self, settings=None, client=None, transport_factory=None, media_devices=None):
        self.settings = settings or Settings.from_env()
        self.client = client or RealtimeClient.from_settings(self.settings)
        self._transport_factory = transport_factory
        self._media_devices = media_devices
        self.rooms = RoomService(self.client)
        self.battles = BattleService(self.client)

    @property
    def transport_factory(self):
        if self._transport_factory is None:
            from roomsync.rtc import transport_factory
            self._transport_factory = transport_factory(self.settings.stun_servers)
        return self._transport_factory

    @property
    def media_devices(self):
        if self._media_devices is None:
            from roomsync.rtc import MediaDevices
            self._media_devices = MediaDevices()
        return self._media_devices

    async def start(self):
        await self.client.start()
        return self

    async def stop(self):
        if self.client.running:
            await self.client.stop()
        self.client.dispose()

    async def open_room(self, room_id, user_id, username, on_remote_track=None, on_peer_removed=None):
        session = CodeRoomSession(
            self.client, self.rooms, room_id, user_id, username,
            self.transport_factory, self.media_devices,
            on_remote_track=on_remote_track, on_peer_removed=on_peer_removed,
        )
        return await session.open()

    async def open_battle(self, battle_id, user_id, on_update=None):
        session = BattleSession(self.client, battle_id, user_id, service=self.battles, on_update=on_update)
        return await session.open()
