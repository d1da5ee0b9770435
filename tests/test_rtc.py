import pytest

from roomsync.errors import MediaAccessError
from roomsync.media import CaptureConstraints
from roomsync.rtc import AiortcTransport, MediaDevices, transport_factory


@pytest.mark.asyncio
async def test_transport_starts_without_remote_description():
    transport = transport_factory(["stun:stun.example.org:3478"])()
    assert isinstance(transport, AiortcTransport)
    assert transport.has_remote_description is False
    assert transport.connection_state == "new"
    await transport.close()
    assert transport.connection_state == "closed"


@pytest.mark.asyncio
async def test_missing_camera_raises_media_access_error(tmp_path):
    devices = MediaDevices(video_device=str(tmp_path / "no-camera"), video_format=None)
    with pytest.raises(MediaAccessError):
        await devices.get_user_media(CaptureConstraints(video=True, audio=False))
