class RoomSyncError(Exception):
    """Base class for every error raised by roomsync."""


class BackendError(RoomSyncError):
    """A read or write against the store failed."""


class DuplicateEntry(BackendError):
    """An insert hit a unique constraint."""


class NotFound(RoomSyncError):
    pass


class SyncWriteError(RoomSyncError):
    """The shared document could not be persisted. Local text is kept as is."""


class MediaAccessError(RoomSyncError):
    """Camera or microphone permission was denied, or no device exists."""


class StaleSignal(RoomSyncError):
    """A signal referenced a peer link that no longer exists."""


class BattleError(RoomSyncError):
    pass


class BattlePermissionError(BattleError):
    pass


class InvalidTransition(BattleError):
    def __init__(self, battle_id, current, target):
        super().__init__(f"Battle {battle_id} cannot go from {current} to {target}")
        self.battle_id = battle_id
        self.current = current
        self.target = target


class NotEnoughParticipants(BattleError):
    pass


class NotJoined(BattleError):
    pass
