import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base


def utcnow():
    """Naive UTC timestamp, the format every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return uuid.uuid4().hex


# Define the base class for ORM models
BaseModel = declarative_base()


class Room(BaseModel):
    __tablename__ = 'rooms'

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    language = Column(String(32), default='javascript')
    code_content = Column(Text, default='')
    created_by = Column(String(65), nullable=False)
    is_active = Column(Boolean, default=True)
    max_participants = Column(Integer, default=4)
    created_at = Column(DateTime, default=utcnow)


class RoomParticipant(BaseModel):
    __tablename__ = 'room_participants'
    __table_args__ = (UniqueConstraint('room_id', 'user_id', name='uq_room_participant'),)

    id = Column(String(32), primary_key=True, default=new_id)
    room_id = Column(String(32), ForeignKey('rooms.id'), nullable=False, index=True)
    user_id = Column(String(65), nullable=False)
    username = Column(String(100), nullable=False)
    is_host = Column(Boolean, default=False)
    cursor_position = Column(JSON, nullable=True)
    joined_at = Column(DateTime, default=utcnow)


class SignalMessage(BaseModel):
    __tablename__ = 'webrtc_signals'

    id = Column(String(32), primary_key=True, default=new_id)
    room_id = Column(String(32), nullable=False, index=True)
    from_user_id = Column(String(65), nullable=False)
    to_user_id = Column(String(65), nullable=False, index=True)
    signal_type = Column(String(16), nullable=False)  # offer, answer or ice-candidate
    signal_data = Column(JSON)
    created_at = Column(DateTime, default=utcnow)


class Battle(BaseModel):
    __tablename__ = 'code_battles'

    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    problem_statement = Column(Text, nullable=False)
    starter_code = Column(Text, nullable=True)
    difficulty = Column(String(16), default='medium')
    time_limit_seconds = Column(Integer, default=900)
    max_participants = Column(Integer, default=10)
    status = Column(String(16), default='waiting')  # waiting -> active -> completed
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_by = Column(String(65), nullable=False)
    winner_id = Column(String(65), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class BattleParticipant(BaseModel):
    __tablename__ = 'battle_participants'
    __table_args__ = (UniqueConstraint('battle_id', 'user_id', name='uq_battle_participant'),)

    id = Column(String(32), primary_key=True, default=new_id)
    battle_id = Column(String(32), ForeignKey('code_battles.id'), nullable=False, index=True)
    user_id = Column(String(65), nullable=False)
    username = Column(String(100), nullable=False)
    status = Column(String(16), default='coding')  # coding or submitted
    score = Column(Integer, default=0)
    submission_code = Column(Text, nullable=True)
    submission_time = Column(DateTime, nullable=True)
    is_correct = Column(Boolean, default=False)
    joined_at = Column(DateTime, default=utcnow)


# Change log the realtime feed is read from, one row per written row
class Change(BaseModel):
    __tablename__ = 'realtime_changes'
    __table_args__ = {'sqlite_autoincrement': True}

    seq = Column(Integer, primary_key=True, autoincrement=True)
    table_name = Column(String(64), index=True)
    event_type = Column(String(8))  # INSERT, UPDATE or DELETE
    record = Column(JSON)
    old_record = Column(JSON, nullable=True)
    committed_at = Column(DateTime, default=utcnow)


TABLES = {
    model.__tablename__: model
    for model in (Room, RoomParticipant, SignalMessage, Battle, BattleParticipant)
}
