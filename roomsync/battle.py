"""Code battles: a timed competition whose status row drives every client.

waiting -> active -> completed, never backwards. Only the creator starts a
battle, and only with two or more participants. Any client whose countdown
runs out ends it; ending is idempotent so those redundant attempts are safe.

Correctness and score are computed by the submitting client and written as
is. Nothing verifies them server-side, so results are only as trustworthy as
the clients; competitive use needs a real evaluator behind submit().
"""
import asyncio
import inspect
import math
from datetime import timedelta
from typing import List, Optional, Tuple

from roomsync import records
from roomsync.errors import (
    BackendError,
    BattleError,
    BattlePermissionError,
    DuplicateEntry,
    InvalidTransition,
    NotEnoughParticipants,
    NotFound,
    NotJoined,
    RoomSyncError,
)
from roomsync.logger import setup_logger
from roomsync.model import Battle, BattleParticipant, utcnow
from roomsync.records import BattleStatus, ParticipantStatus

logger = setup_logger(name="RoomSync")

DEFAULT_STARTER_CODE = "// Write your solution here\n\nfunction solution() {\n  \n}"
MIN_PARTICIPANTS = 2


def evaluate_submission(code: str) -> bool:
    """Placeholder correctness check: long enough and returns something.

    This runs no tests and is not a grader.
    """
    return len(code) > 50 and "return" in code


def compute_score(is_correct: bool, time_limit_seconds: int, time_left: int) -> int:
    if not is_correct:
        return 0
    elapsed = time_limit_seconds - max(0, min(time_left, time_limit_seconds))
    return max(100, 1000 - elapsed // 10)


def deadline(battle: records.Battle):
    """started_at + time limit, recomputed by every client. None until the battle starts."""
    if battle.started_at is None:
        return None
    return battle.started_at + timedelta(seconds=battle.time_limit_seconds)


def time_left(battle: records.Battle, now=None) -> int:
    if battle.status == BattleStatus.WAITING or battle.started_at is None:
        return battle.time_limit_seconds
    if battle.status == BattleStatus.COMPLETED:
        return 0
    now = now or utcnow()
    return max(0, math.floor((deadline(battle) - now).total_seconds()))


def format_time(seconds: int) -> str:
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class BattleService:
    def __init__(self, client):
        self.client = client

    async def get_battle(self, battle_id: str) -> Optional[records.Battle]:
        try:
            row = await self.client.get(Battle.__tablename__, battle_id)
        except BackendError as e:
            logger.warning(f"Could not load battle {battle_id}: {e}")
            return None
        return records.Battle.model_validate(row) if row else None

    async def _require(self, battle_id):
        battle = await self.get_battle(battle_id)
        if battle is None:
            raise NotFound(f"Battle {battle_id} not found")
        return battle

    async def list_open_battles(self) -> List[records.Battle]:
        try:
            rows = await self.client.select(
                Battle.__tablename__,
                Battle.status.in_([BattleStatus.WAITING.value, BattleStatus.ACTIVE.value]),
                order_by="created_at", descending=True,
            )
        except BackendError as e:
            logger.warning(f"Could not list battles: {e}")
            return []
        return records.parse_all(records.Battle, rows)

    async def list_participants(self, battle_id: str) -> List[records.BattleParticipant]:
        """Participants, highest score first."""
        try:
            rows = await self.client.select(
                BattleParticipant.__tablename__, battle_id=battle_id, order_by="score", descending=True)
        except BackendError as e:
            logger.warning(f"Could not list participants of battle {battle_id}: {e}")
            return []
        return records.parse_all(records.BattleParticipant, rows)

    async def create_battle(self, created_by: str, title: str, problem_statement: str,
                            description: Optional[str] = None, starter_code: str = DEFAULT_STARTER_CODE,
                            difficulty: str = "medium", time_limit_seconds: int = 900,
                            max_participants: int = 10) -> records.Battle:
        if not title or not problem_statement:
            raise ValueError("Title and problem statement are required")
        if time_limit_seconds <= 0:
            raise ValueError("Time limit must be positive")
        row = await self.client.insert(Battle.__tablename__, {
            "title": title,
            "description": description,
            "problem_statement": problem_statement,
            "starter_code": starter_code,
            "difficulty": difficulty,
            "time_limit_seconds": time_limit_seconds,
            "max_participants": max_participants,
            "status": BattleStatus.WAITING.value,
            "created_by": created_by,
        })
        battle = records.Battle.model_validate(row)
        logger.info(f"Created battle {battle.id} ({battle.title}) by {created_by}")
        return battle

    async def join(self, battle_id: str, user_id: str, username: str) -> Tuple[records.BattleParticipant, bool]:
        """Join a battle. Returns the participant row and whether it was created just now."""
        await self._require(battle_id)
        try:
            row = await self.client.insert(BattleParticipant.__tablename__, {
                "battle_id": battle_id,
                "user_id": user_id,
                "username": username,
                "status": ParticipantStatus.CODING.value,
            })
        except DuplicateEntry:
            logger.info(f"{user_id} is already in battle {battle_id}")
            rows = await self.client.select(BattleParticipant.__tablename__, battle_id=battle_id, user_id=user_id)
            return records.BattleParticipant.model_validate(rows[0]), False
        logger.info(f"{username} joined battle {battle_id}")
        return records.BattleParticipant.model_validate(row), True

    async def start(self, battle_id: str, user_id: str) -> records.Battle:
        battle = await self._require(battle_id)
        if battle.created_by != user_id:
            raise BattlePermissionError(f"Only the creator can start battle {battle_id}")
        if battle.status != BattleStatus.WAITING:
            raise InvalidTransition(battle_id, battle.status.value, BattleStatus.ACTIVE.value)
        rows = await self.client.select(BattleParticipant.__tablename__, battle_id=battle_id)
        if len({row["user_id"] for row in rows}) < MIN_PARTICIPANTS:
            raise NotEnoughParticipants(f"Battle {battle_id} needs at least {MIN_PARTICIPANTS} participants")
        updated = await self.client.update(
            Battle.__tablename__,
            {"status": BattleStatus.ACTIVE.value, "started_at": utcnow()},
            id=battle_id, status=BattleStatus.WAITING.value,
        )
        if not updated:
            current = await self._require(battle_id)
            raise InvalidTransition(battle_id, current.status.value, BattleStatus.ACTIVE.value)
        logger.info(f"Battle {battle_id} started")
        return records.Battle.model_validate(updated[0])

    async def end(self, battle_id: str, user_id: Optional[str] = None) -> records.Battle:
        """Complete an active battle. Ending a completed battle again is a no-op.

        Pass user_id for an explicit end; only the creator may do that.
        Timer expiry ends without one.
        """
        if user_id is not None:
            battle = await self._require(battle_id)
            if battle.created_by != user_id:
                raise BattlePermissionError(f"Only the creator can end battle {battle_id}")
        updated = await self.client.update(
            Battle.__tablename__,
            {"status": BattleStatus.COMPLETED.value, "ended_at": utcnow()},
            id=battle_id, status=BattleStatus.ACTIVE.value,
        )
        if updated:
            logger.info(f"Battle {battle_id} completed")
            return records.Battle.model_validate(updated[0])
        current = await self._require(battle_id)
        if current.status == BattleStatus.COMPLETED:
            logger.debug(f"Battle {battle_id} was already completed")
            return current
        raise InvalidTransition(battle_id, current.status.value, BattleStatus.COMPLETED.value)

    async def submit(self, battle_id: str, user_id: str, code: str, time_left: int) -> records.BattleParticipant:
        """Record a submission on the participant's existing row; resubmitting overwrites it."""
        battle = await self._require(battle_id)
        is_correct = evaluate_submission(code)
        score = compute_score(is_correct, battle.time_limit_seconds, time_left)
        rows = await self.client.update(BattleParticipant.__tablename__, {
            "submission_code": code,
            "submission_time": utcnow(),
            "is_correct": is_correct,
            "score": score,
            "status": ParticipantStatus.SUBMITTED.value,
        }, battle_id=battle_id, user_id=user_id)
        if not rows:
            raise NotJoined(f"{user_id} has not joined battle {battle_id}")
        logger.info(f"{user_id} submitted to battle {battle_id}: correct={is_correct} score={score}")
        return records.BattleParticipant.model_validate(rows[0])


class BattleCountdown:
    """One-second countdown recomputed from deadline - now on every tick.

    Deadlines come from the server's started_at but "now" is the local clock,
    so two clients can disagree by their clock skew plus feed latency.
    """

    def __init__(self, deadline, on_expire, on_tick=None, clock=utcnow, interval=1.0):
        self.deadline = deadline
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.clock = clock
        self.interval = interval
        self.expired = False
        self._task = None

    @property
    def remaining(self):
        return max(0, math.floor((self.deadline - self.clock()).total_seconds()))

    @property
    def running(self):
        return self._task is not None and not self._task.done()

    def start(self):
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self

    def stop(self):
        if self.running and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait(self):
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except RoomSyncError as e:
                logger.error(f"Battle countdown stopped: {e}")

    async def _run(self):
        while True:
            remaining = self.remaining
            if self.on_tick is not None:
                await _maybe_await(self.on_tick(remaining))
            if remaining <= 0:
                try:
                    await _maybe_await(self.on_expire())
                except BackendError as e:
                    logger.warning(f"Could not end battle, retrying on the next tick: {e}")
                    await asyncio.sleep(self.interval)
                    continue
                self.expired = True
                return
            await asyncio.sleep(self.interval)


class BattleSession:
    """One client's view of a battle: subscribed on open(), released on close()."""

    def __init__(self, client, battle_id, user_id, service=None, clock=utcnow, tick_interval=1.0,
                 on_update=None):
        self.client = client
        self.battle_id = battle_id
        self.user_id = user_id
        self.service = service or BattleService(client)
        self.clock = clock
        self.tick_interval = tick_interval
        self.on_update = on_update
        self.battle = None
        self.participants = []
        self.code = ""
        self.countdown = None
        self.channel = None
        self.closed = False

    async def open(self):
        battle = await self.service.get_battle(self.battle_id)
        if battle is None:
            raise NotFound(f"Battle {self.battle_id} not found")
        self.battle = battle
        self.code = battle.starter_code or ""
        self.participants = await self.service.list_participants(self.battle_id)
        self.channel = self.client.channel(f"battle-{self.battle_id}")
        self.channel.on("UPDATE", Battle.__tablename__, self._on_battle_change, filter={"id": self.battle_id})
        self.channel.on("*", BattleParticipant.__tablename__, self._on_participants_change,
                        filter={"battle_id": self.battle_id})
        self.channel.subscribe()
        self._sync_countdown()
        return self

    async def close(self):
        self.closed = True
        if self.channel is not None:
            self.client.remove_channel(self.channel)
            self.channel = None
        if self.countdown is not None:
            self.countdown.stop()
            await self.countdown.wait()

    @property
    def time_left(self):
        if self.battle is None:
            return 0
        if self.countdown is not None and self.battle.status == BattleStatus.ACTIVE:
            return self.countdown.remaining
        return time_left(self.battle, self.clock())

    async def _on_battle_change(self, change, record):
        if self.closed:
            return
        self.battle = records.Battle.model_validate(record)
        self._sync_countdown()
        await self._notify()

    async def _on_participants_change(self):
        if self.closed:
            return
        self.participants = await self.service.list_participants(self.battle_id)
        await self._notify()

    async def _notify(self):
        if self.on_update is not None:
            await _maybe_await(self.on_update(self))

    def _sync_countdown(self):
        status = self.battle.status
        if status == BattleStatus.ACTIVE and self.battle.started_at is not None and self.countdown is None:
            self.countdown = BattleCountdown(
                deadline(self.battle), self._expire, clock=self.clock, interval=self.tick_interval,
            ).start()
        elif status == BattleStatus.COMPLETED and self.countdown is not None:
            self.countdown.stop()

    async def _expire(self):
        if self.closed:
            return
        try:
            await self.service.end(self.battle_id)
        except BattleError as e:
            logger.warning(f"Countdown expired but battle {self.battle_id} could not end: {e}")

    async def start(self):
        return await self.service.start(self.battle_id, self.user_id)

    async def end(self):
        return await self.service.end(self.battle_id, self.user_id)

    async def submit(self, code=None):
        if code is not None:
            self.code = code
        return await self.service.submit(self.battle_id, self.user_id, self.code, self.time_left)
