"""Typed records for the rows the store hands back.

Rows are parsed here before any component logic touches them, whether they
come from a direct read or from the change feed (where timestamps arrive as
ISO strings).
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SignalType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class BattleStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"


class ParticipantStatus(str, Enum):
    CODING = "coding"
    SUBMITTED = "submitted"


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=False)


class Room(Record):
    id: str
    name: str
    description: Optional[str] = None
    language: str = "javascript"
    code_content: str = ""
    created_by: str
    is_active: bool = True
    max_participants: int = 4
    created_at: Optional[datetime] = None


class RoomParticipant(Record):
    id: str
    room_id: str
    user_id: str
    username: str
    is_host: bool = False
    cursor_position: Optional[Dict[str, Any]] = None
    joined_at: Optional[datetime] = None


class Signal(Record):
    id: str
    room_id: str
    from_user_id: str
    to_user_id: str
    signal_type: SignalType
    signal_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class Battle(Record):
    id: str
    title: str
    description: Optional[str] = None
    problem_statement: str
    starter_code: Optional[str] = None
    difficulty: str = "medium"
    time_limit_seconds: int = 900
    max_participants: int = 10
    status: BattleStatus = BattleStatus.WAITING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_by: str
    winner_id: Optional[str] = None
    created_at: Optional[datetime] = None


class BattleParticipant(Record):
    id: str
    battle_id: str
    user_id: str
    username: str
    status: ParticipantStatus = ParticipantStatus.CODING
    score: int = 0
    submission_code: Optional[str] = None
    submission_time: Optional[datetime] = None
    is_correct: bool = False
    joined_at: Optional[datetime] = None


class ChangeEvent(Record):
    seq: int
    table: str
    event_type: str
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Optional[Dict[str, Any]] = None
    committed_at: Optional[datetime] = None

    @property
    def row(self) -> Dict[str, Any]:
        """The row image a filter is matched against."""
        if self.event_type == "DELETE":
            return self.old_record or {}
        return self.record


def parse_all(model, rows: List[Dict[str, Any]]) -> list:
    return [model.model_validate(row) for row in rows]
