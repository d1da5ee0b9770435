"""Peer signaling relayed through the webrtc_signals table.

Every offer, answer and ICE candidate is a row addressed to one recipient.
The recipient handles it and deletes it, so each row is delivered at most
once. Rows left behind by a peer that went away are removed on teardown and,
failing that, by the housekeeper once they outlive the signal TTL.
"""
import inspect
from functools import partial

from pydantic import ValidationError
from sqlalchemy import or_

from roomsync.errors import BackendError, StaleSignal
from roomsync.logger import setup_logger
from roomsync.media import CaptureConstraints
from roomsync.model import SignalMessage
from roomsync.records import Signal, SignalType

logger = setup_logger(name="RoomSync")

CLOSED_STATES = ("failed", "disconnected", "closed")


class PeerLink:
    """Local handle to one peer connection. Never shared between clients."""

    def __init__(self, remote_user_id, transport):
        self.remote_user_id = remote_user_id
        self.transport = transport
        # Candidates received before the remote description was set
        self.pending_candidates = []
        self.connection_state = "new"

    @property
    def remote_description_set(self):
        return self.transport.has_remote_description

    async def add_candidate(self, candidate):
        """Apply the candidate now, or buffer it until the remote description is set."""
        if self.remote_description_set:
            await self._apply(candidate)
            return True
        self.pending_candidates.append(candidate)
        return False

    async def flush_candidates(self):
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self._apply(candidate)
        return len(pending)

    async def _apply(self, candidate):
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            # One bad candidate does not sink the negotiation
            logger.warning(f"Failed to add ICE candidate from {self.remote_user_id}: {e}")

    def __repr__(self):
        return f"PeerLink({self.remote_user_id!r}, state={self.connection_state!r})"


class PeerSignalingRelay:
    def __init__(self, client, room_id, user_id, transport_factory, media_devices,
                 on_remote_track=None, on_peer_removed=None):
        self.client = client
        self.room_id = room_id
        self.user_id = user_id
        self.transport_factory = transport_factory
        self.media_devices = media_devices
        self.on_remote_track = on_remote_track
        self.on_peer_removed = on_peer_removed
        self.links = {}
        self.local_stream = None
        self.channel = None
        self.closed = False
        # Candidates from peers we have no link with yet, adopted when their offer arrives
        self._orphan_candidates = {}

    def start(self):
        """Subscribe to signals addressed to this user."""
        if self.channel is not None:
            return self
        self.channel = self.client.channel(f"webrtc-{self.room_id}-{self.user_id}").on(
            "INSERT", SignalMessage.__tablename__, self._on_insert,
            filter={"to_user_id": self.user_id},
        ).subscribe()
        return self

    async def _on_insert(self, change, record):
        if self.closed:
            return
        try:
            signal = Signal.model_validate(record)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed signal row: {e}")
            return
        await self.on_signal_received(signal)

    async def start_local_capture(self, video=True, audio=True):
        """Open camera and/or microphone and attach the tracks to every existing link.

        Raises MediaAccessError when the devices cannot be opened; the session
        carries on without media.
        """
        try:
            stream = await self.media_devices.get_user_media(CaptureConstraints(video=video, audio=audio))
        except Exception:
            logger.warning(f"Local capture failed for {self.user_id} in room {self.room_id}")
            raise
        # A second capture replaces the first; its devices are released
        previous, self.local_stream = self.local_stream, stream
        dropped = set()
        if previous is not None:
            previous.stop()
            dropped = {track.kind for track in previous.tracks} - {track.kind for track in stream.tracks}
        for link in self.links.values():
            for track in stream.tracks:
                await self._attach(link, track)
            for kind in dropped:
                await link.transport.replace_track(kind, None)
        return stream

    async def initiate_connection(self, remote_user_id):
        if remote_user_id == self.user_id:
            raise ValueError("Cannot open a peer connection to yourself")
        if remote_user_id in self.links:
            await self._drop_link(remote_user_id)
        link = await self._create_link(remote_user_id)
        offer = await link.transport.create_offer()
        await self._send(remote_user_id, SignalType.OFFER, {"sdp": offer})
        logger.info(f"Offer sent from {self.user_id} to {remote_user_id}")
        return link

    async def on_signal_received(self, signal):
        if signal.from_user_id == self.user_id:
            # The feed delivers our own inserts back to us
            return
        if signal.room_id != self.room_id or self.closed:
            return
        logger.debug(f"Received {signal.signal_type.value} from {signal.from_user_id}")
        try:
            if signal.signal_type == SignalType.OFFER:
                await self._handle_offer(signal)
            elif signal.signal_type == SignalType.ANSWER:
                await self._handle_answer(signal)
            else:
                await self._handle_candidate(signal)
        except StaleSignal as e:
            logger.info(f"Dropping stale signal {signal.id}: {e}")
        finally:
            await self._consume(signal)

    async def _handle_offer(self, signal):
        sender = signal.from_user_id
        link = self.links.get(sender)
        if link is None:
            link = await self._create_link(sender)
        await link.transport.set_remote_description(signal.signal_data["sdp"])
        await link.flush_candidates()
        answer = await link.transport.create_answer()
        await self._send(sender, SignalType.ANSWER, {"sdp": answer})
        logger.info(f"Answer sent from {self.user_id} to {sender}")

    async def _handle_answer(self, signal):
        link = self.links.get(signal.from_user_id)
        if link is None:
            raise StaleSignal(f"answer from {signal.from_user_id} has no peer link")
        await link.transport.set_remote_description(signal.signal_data["sdp"])
        await link.flush_candidates()

    async def _handle_candidate(self, signal):
        sender = signal.from_user_id
        candidate = signal.signal_data.get("candidate")
        if candidate is None:
            return
        link = self.links.get(sender)
        if link is not None:
            await link.add_candidate(candidate)
        else:
            self._orphan_candidates.setdefault(sender, []).append(candidate)

    async def _consume(self, signal):
        try:
            await self.client.delete(SignalMessage.__tablename__, id=signal.id)
        except BackendError as e:
            logger.warning(f"Could not delete consumed signal {signal.id}: {e}")

    async def _send(self, remote_user_id, signal_type, data):
        await self.client.insert(SignalMessage.__tablename__, {
            "room_id": self.room_id,
            "from_user_id": self.user_id,
            "to_user_id": remote_user_id,
            "signal_type": signal_type.value,
            "signal_data": data,
        })

    async def _create_link(self, remote_user_id):
        transport = self.transport_factory()
        link = PeerLink(remote_user_id, transport)
        transport.on_ice_candidate = partial(self._send_candidate, remote_user_id)
        transport.on_track = partial(self._handle_track, remote_user_id)
        transport.on_state_change = partial(self._handle_state_change, link)
        if self.local_stream is not None:
            for track in self.local_stream.tracks:
                await self._attach(link, track)
        link.pending_candidates.extend(self._orphan_candidates.pop(remote_user_id, []))
        self.links[remote_user_id] = link
        logger.info(f"Created peer link {self.user_id} -> {remote_user_id}")
        return link

    async def _attach(self, link, track):
        source = track.source if track.enabled else None
        if not await link.transport.replace_track(track.kind, source):
            link.transport.add_track(track.source)
            if not track.enabled:
                await link.transport.replace_track(track.kind, None)

    async def _drop_link(self, remote_user_id):
        link = self.links.pop(remote_user_id, None)
        if link is None:
            return
        await link.transport.close()
        link.connection_state = "closed"
        if self.on_peer_removed is not None:
            result = self.on_peer_removed(remote_user_id)
            if inspect.isawaitable(result):
                await result
        logger.info(f"Closed peer link {self.user_id} -> {remote_user_id}")

    async def _send_candidate(self, remote_user_id, candidate):
        if self.closed or candidate is None:
            return
        await self._send(remote_user_id, SignalType.ICE_CANDIDATE, {"candidate": candidate})

    def _handle_track(self, remote_user_id, track):
        logger.info(f"Received remote {getattr(track, 'kind', 'media')} track from {remote_user_id}")
        if self.on_remote_track is not None:
            self.on_remote_track(remote_user_id, track)

    async def _handle_state_change(self, link, state):
        link.connection_state = state
        logger.info(f"Connection state for {link.remote_user_id}: {state}")
        if state in CLOSED_STATES and self.links.get(link.remote_user_id) is link:
            await self._drop_link(link.remote_user_id)

    async def toggle_local_video(self):
        """Flip the local video track, starting the camera the first time. Returns the new state."""
        if self.local_stream is None or self.local_stream.video_track is None:
            stream = await self.media_devices.get_user_media(CaptureConstraints(video=True, audio=False))
            track = stream.video_track
            if self.local_stream is None:
                self.local_stream = stream
            else:
                self.local_stream.add_track(track)
            for link in self.links.values():
                await self._attach(link, track)
            return True
        track = self.local_stream.video_track
        track.enabled = not track.enabled
        for link in self.links.values():
            await link.transport.replace_track("video", track.source if track.enabled else None)
        return track.enabled

    async def toggle_local_audio(self):
        """Flip the local audio track. Without a microphone this is a no-op returning False."""
        if self.local_stream is None or self.local_stream.audio_track is None:
            return False
        track = self.local_stream.audio_track
        track.enabled = not track.enabled
        for link in self.links.values():
            await link.transport.replace_track("audio", track.source if track.enabled else None)
        return track.enabled

    async def cleanup_signals(self):
        """Delete every signal row this user sent or was sent in the room."""
        return await self.client.delete(
            SignalMessage.__tablename__,
            or_(SignalMessage.from_user_id == self.user_id, SignalMessage.to_user_id == self.user_id),
            room_id=self.room_id,
        )

    async def teardown(self):
        if self.closed:
            return
        self.closed = True
        if self.channel is not None:
            self.client.remove_channel(self.channel)
        for remote_user_id in list(self.links):
            await self._drop_link(remote_user_id)
        self._orphan_candidates.clear()
        if self.local_stream is not None:
            self.local_stream.stop()
            self.local_stream = None
        try:
            removed = await self.cleanup_signals()
        except BackendError as e:
            logger.error(f"Signal cleanup failed for {self.user_id} in room {self.room_id}: {e}")
            return
        logger.info(f"Signaling for {self.user_id} in room {self.room_id} torn down, {removed} signal(s) removed")
