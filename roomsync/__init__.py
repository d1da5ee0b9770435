from roomsync.core import Channel, RealtimeClient
from roomsync.config import Settings
from roomsync.battle import BattleCountdown, BattleService, BattleSession
from roomsync.document import DocumentSync
from roomsync.rooms import RoomService
from roomsync.signaling import PeerLink, PeerSignalingRelay
from roomsync.app import CodeRoomSession, Portal

__all__ = [
    "BattleCountdown",
    "BattleService",
    "BattleSession",
    "Channel",
    "CodeRoomSession",
    "DocumentSync",
    "PeerLink",
    "PeerSignalingRelay",
    "Portal",
    "RealtimeClient",
    "RoomService",
    "Settings",
]
