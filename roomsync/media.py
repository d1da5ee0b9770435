"""Local capture types shared by the signaling relay and the media backends."""


class CaptureConstraints:
    """What start_local_capture asks the devices for. The values are fixed."""

    def __init__(self, video=True, audio=True):
        self.video = {
            "width": {"ideal": 640},
            "height": {"ideal": 480},
            "facingMode": "user",
        } if video else None
        self.audio = {
            "echoCancellation": True,
            "noiseSuppression": True,
            "autoGainControl": True,
        } if audio else None

    @property
    def video_size(self):
        if not self.video:
            return None
        return f"{self.video['width']['ideal']}x{self.video['height']['ideal']}"

    def __repr__(self):
        return f"CaptureConstraints(video={self.video is not None}, audio={self.audio is not None})"


class LocalTrack:
    def __init__(self, kind, source, owner=None):
        self.kind = kind
        # The media track handed to peer connections
        self.source = source
        self.owner = owner
        self.enabled = True
        self.stopped = False

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        stop = getattr(self.source, "stop", None)
        if stop is not None:
            stop()


class LocalStream:
    def __init__(self, tracks=None):
        self.tracks = list(tracks or [])

    def _first(self, kind):
        for track in self.tracks:
            if track.kind == kind:
                return track
        return None

    @property
    def video_track(self):
        return self._first("video")

    @property
    def audio_track(self):
        return self._first("audio")

    def add_track(self, track):
        self.tracks.append(track)

    def stop(self):
        for track in self.tracks:
            track.stop()
