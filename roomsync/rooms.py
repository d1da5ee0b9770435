from typing import List, Optional

from roomsync import records
from roomsync.errors import BackendError, DuplicateEntry, NotFound
from roomsync.logger import setup_logger
from roomsync.model import Room, RoomParticipant

logger = setup_logger(name="RoomSync")


def initial_code(name: str, language: str) -> str:
    return f"// {name}\n// Language: {language}\n\n"


class RoomService:
    def __init__(self, client):
        self.client = client

    async def get_room(self, room_id: str) -> Optional[records.Room]:
        try:
            row = await self.client.get(Room.__tablename__, room_id)
        except BackendError as e:
            logger.warning(f"Could not load room {room_id}: {e}")
            return None
        return records.Room.model_validate(row) if row else None

    async def list_active_rooms(self) -> List[records.Room]:
        try:
            rows = await self.client.select(
                Room.__tablename__, is_active=True, order_by="created_at", descending=True)
        except BackendError as e:
            logger.warning(f"Could not list rooms: {e}")
            return []
        return records.parse_all(records.Room, rows)

    async def list_participants(self, room_id: str) -> List[records.RoomParticipant]:
        try:
            rows = await self.client.select(
                RoomParticipant.__tablename__, room_id=room_id, order_by="joined_at")
        except BackendError as e:
            logger.warning(f"Could not list participants of room {room_id}: {e}")
            return []
        return records.parse_all(records.RoomParticipant, rows)

    async def create_room(self, name: str, created_by: str, username: str, description: Optional[str] = None,
                          language: str = "javascript", max_participants: int = 4) -> records.Room:
        if not name or not name.strip():
            raise ValueError("Room name is required")
        row = await self.client.insert(Room.__tablename__, {
            "name": name,
            "description": description,
            "language": language,
            "created_by": created_by,
            "code_content": initial_code(name, language),
            "max_participants": max_participants,
        })
        room = records.Room.model_validate(row)
        await self._add_participant(room.id, created_by, username, is_host=True)
        logger.info(f"Created room {room.id} ({room.name}) hosted by {created_by}")
        return room

    async def join_room(self, room_id: str, user_id: str, username: str) -> records.RoomParticipant:
        """Join a room. Joining twice returns the existing membership."""
        room = await self.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        existing = await self._membership(room_id, user_id)
        if existing is not None:
            return existing
        participant = await self._add_participant(room_id, user_id, username, is_host=False)
        logger.info(f"{username} joined room {room_id}")
        return participant

    async def leave_room(self, room_id: str, user_id: str) -> bool:
        removed = await self.client.delete(RoomParticipant.__tablename__, room_id=room_id, user_id=user_id)
        if removed:
            logger.info(f"{user_id} left room {room_id}")
        return bool(removed)

    async def update_cursor(self, room_id: str, user_id: str, position: dict) -> Optional[records.RoomParticipant]:
        rows = await self.client.update(
            RoomParticipant.__tablename__, {"cursor_position": position}, room_id=room_id, user_id=user_id)
        return records.RoomParticipant.model_validate(rows[0]) if rows else None

    async def _membership(self, room_id, user_id):
        rows = await self.client.select(RoomParticipant.__tablename__, room_id=room_id, user_id=user_id)
        return records.RoomParticipant.model_validate(rows[0]) if rows else None

    async def _add_participant(self, room_id, user_id, username, is_host):
        try:
            row = await self.client.insert(RoomParticipant.__tablename__, {
                "room_id": room_id,
                "user_id": user_id,
                "username": username,
                "is_host": is_host,
            })
        except DuplicateEntry:
            # Lost a race with another join from the same user
            return await self._membership(room_id, user_id)
        return records.RoomParticipant.model_validate(row)
