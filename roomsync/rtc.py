"""aiortc-backed peer transport and capture devices.

The signaling relay only talks to the small dict-in/dict-out surface below, so
any other WebRTC stack can be swapped in by providing the same methods.
"""
import inspect

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from av.error import FFmpegError

from roomsync.config import DEFAULT_STUN_SERVERS
from roomsync.errors import MediaAccessError
from roomsync.logger import setup_logger
from roomsync.media import LocalStream, LocalTrack

logger = setup_logger(name="RoomSync")


class AiortcTransport:
    def __init__(self, stun_servers=None):
        servers = stun_servers or DEFAULT_STUN_SERVERS
        self.pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in servers]))
        # aiortc gathers candidates into the SDP itself, so on_ice_candidate is never
        # called here; it is set for transports that trickle candidates.
        self.on_ice_candidate = None
        self.on_track = None
        self.on_state_change = None

        @self.pc.on("connectionstatechange")
        async def _on_state_change():
            logger.debug(f"Peer connection state: {self.pc.connectionState}")
            if self.on_state_change is not None:
                await self.on_state_change(self.pc.connectionState)

        @self.pc.on("track")
        def _on_track(track):
            if self.on_track is not None:
                self.on_track(track)

    @property
    def connection_state(self):
        return self.pc.connectionState

    @property
    def has_remote_description(self):
        return self.pc.remoteDescription is not None

    def _local_description(self):
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}

    async def create_offer(self):
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self):
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate):
        value = candidate.get("candidate") or ""
        if not value:
            # end-of-candidates marker
            return
        if value.startswith("candidate:"):
            value = value.split(":", 1)[1]
        ice = candidate_from_sdp(value)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    def add_track(self, track):
        self.pc.addTrack(track)

    async def replace_track(self, kind, track):
        """Swap the track on the sender of this kind. False when no such sender exists."""
        for sender in self.pc.getSenders():
            if sender.kind == kind:
                result = sender.replaceTrack(track)
                if inspect.isawaitable(result):
                    await result
                return True
        return False

    async def close(self):
        await self.pc.close()


class MediaDevices:
    """Camera and microphone capture through ffmpeg devices."""

    def __init__(self, video_device="/dev/video0", video_format="v4l2",
                 audio_device="default", audio_format="pulse"):
        self.video_device = video_device
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format

    async def get_user_media(self, constraints):
        tracks = []
        try:
            if constraints.video:
                player = MediaPlayer(self.video_device, format=self.video_format,
                                     options={"video_size": constraints.video_size})
                if player.video is None:
                    raise MediaAccessError(f"No video stream on {self.video_device}")
                tracks.append(LocalTrack("video", player.video, player))
            if constraints.audio:
                # ffmpeg input devices take no echo/noise/gain switches; those stay browser-side
                player = MediaPlayer(self.audio_device, format=self.audio_format)
                if player.audio is None:
                    raise MediaAccessError(f"No audio stream on {self.audio_device}")
                tracks.append(LocalTrack("audio", player.audio, player))
        except (OSError, FFmpegError) as e:
            for track in tracks:
                track.stop()
            raise MediaAccessError(f"Could not access camera/microphone: {e}") from e
        except MediaAccessError:
            for track in tracks:
                track.stop()
            raise
        return LocalStream(tracks)


def transport_factory(stun_servers=None):
    def create():
        return AiortcTransport(stun_servers)
    return create
