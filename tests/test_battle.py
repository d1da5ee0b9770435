import asyncio
from datetime import timedelta

import pytest

from roomsync.battle import (
    BattleCountdown,
    BattleService,
    BattleSession,
    compute_score,
    evaluate_submission,
    format_time,
    time_left,
)
from roomsync.errors import (
    BackendError,
    BattlePermissionError,
    InvalidTransition,
    NotEnoughParticipants,
    NotFound,
    NotJoined,
)
from roomsync.model import utcnow
from roomsync.records import BattleStatus, ParticipantStatus

GOOD_CODE = "function solution(a, b) {\n  const total = a + b;\n  return total;\n}\n"


@pytest.fixture
def battles(client):
    return BattleService(client)


async def _ready_battle(battles, time_limit_seconds=60):
    battle = await battles.create_battle("alice", "Two Sum", "Find two numbers.",
                                         time_limit_seconds=time_limit_seconds)
    await battles.join(battle.id, "alice", "Alice")
    await battles.join(battle.id, "bob", "Bob")
    return battle


def test_placeholder_correctness_check():
    assert evaluate_submission(GOOD_CODE)
    assert not evaluate_submission("return 1")
    assert not evaluate_submission("function solution(a, b) {\n  console.log(a + b);\n}\n" * 2)


def test_score_rewards_speed_with_a_floor():
    assert compute_score(False, 900, 900) == 0
    assert compute_score(True, 900, 900) == 1000
    assert compute_score(True, 900, 800) == 990
    assert compute_score(True, 900, 0) == 910
    assert compute_score(True, 20000, 0) == 100


def test_format_time():
    assert format_time(0) == "00:00"
    assert format_time(61) == "01:01"
    assert format_time(900) == "15:00"


@pytest.mark.asyncio
async def test_create_requires_title_and_problem(battles):
    with pytest.raises(ValueError):
        await battles.create_battle("alice", "", "statement")
    with pytest.raises(ValueError):
        await battles.create_battle("alice", "title", "")


@pytest.mark.asyncio
async def test_create_defaults(battles):
    battle = await battles.create_battle("alice", "Two Sum", "Find two numbers.")

    assert battle.status == BattleStatus.WAITING
    assert battle.time_limit_seconds == 900
    assert battle.difficulty == "medium"
    assert battle.starter_code.startswith("// Write your solution here")
    assert time_left(battle) == 900


@pytest.mark.asyncio
async def test_joining_twice_is_informational(battles):
    battle = await battles.create_battle("alice", "Two Sum", "Find two numbers.")

    first, created = await battles.join(battle.id, "bob", "Bob")
    again, created_again = await battles.join(battle.id, "bob", "Bob")

    assert created and not created_again
    assert first.id == again.id
    assert len(await battles.list_participants(battle.id)) == 1


@pytest.mark.asyncio
async def test_only_creator_starts(battles):
    battle = await _ready_battle(battles)
    with pytest.raises(BattlePermissionError):
        await battles.start(battle.id, "bob")


@pytest.mark.asyncio
async def test_start_needs_two_participants(battles):
    battle = await battles.create_battle("alice", "Two Sum", "Find two numbers.")
    await battles.join(battle.id, "alice", "Alice")
    with pytest.raises(NotEnoughParticipants):
        await battles.start(battle.id, "alice")


@pytest.mark.asyncio
async def test_start_activates_once(battles):
    battle = await _ready_battle(battles)

    started = await battles.start(battle.id, "alice")

    assert started.status == BattleStatus.ACTIVE
    assert started.started_at is not None
    with pytest.raises(InvalidTransition):
        await battles.start(battle.id, "alice")


@pytest.mark.asyncio
async def test_end_is_idempotent(battles):
    battle = await _ready_battle(battles)
    await battles.start(battle.id, "alice")

    first = await battles.end(battle.id)
    second = await battles.end(battle.id)

    assert first.status == second.status == BattleStatus.COMPLETED
    assert second.ended_at == first.ended_at
    with pytest.raises(InvalidTransition):
        await battles.start(battle.id, "alice")


@pytest.mark.asyncio
async def test_waiting_battle_cannot_end(battles):
    battle = await _ready_battle(battles)
    with pytest.raises(InvalidTransition):
        await battles.end(battle.id)


@pytest.mark.asyncio
async def test_explicit_end_is_creator_only(battles):
    battle = await _ready_battle(battles)
    await battles.start(battle.id, "alice")
    with pytest.raises(BattlePermissionError):
        await battles.end(battle.id, "bob")
    assert (await battles.end(battle.id, "alice")).status == BattleStatus.COMPLETED


@pytest.mark.asyncio
async def test_submission_without_return_scores_zero(battles):
    battle = await _ready_battle(battles)
    await battles.start(battle.id, "alice")

    result = await battles.submit(battle.id, "bob", "function solution() { console.log('no result here at all'); }", 50)

    assert result.is_correct is False
    assert result.score == 0
    assert result.status == ParticipantStatus.SUBMITTED


@pytest.mark.asyncio
async def test_resubmitting_updates_the_same_row(battles):
    battle = await _ready_battle(battles)
    await battles.start(battle.id, "alice")

    first = await battles.submit(battle.id, "bob", "nothing yet", 55)
    second = await battles.submit(battle.id, "bob", GOOD_CODE, 40)

    assert first.id == second.id
    assert second.is_correct and second.score == 998
    rows = await battles.list_participants(battle.id)
    assert [(p.user_id, p.score) for p in rows] == [("bob", 998), ("alice", 0)]


@pytest.mark.asyncio
async def test_submit_requires_membership(battles):
    battle = await _ready_battle(battles)
    with pytest.raises(NotJoined):
        await battles.submit(battle.id, "mallory", GOOD_CODE, 10)


@pytest.mark.asyncio
async def test_open_battles_exclude_completed(battles):
    done = await _ready_battle(battles)
    await battles.start(done.id, "alice")
    await battles.end(done.id)
    waiting = await battles.create_battle("carol", "Valid Parentheses", "Check brackets.")

    assert [b.id for b in await battles.list_open_battles()] == [waiting.id]


@pytest.mark.asyncio
async def test_countdown_expires_at_deadline():
    expired = []
    ticks = []
    now = utcnow()
    countdown = BattleCountdown(now - timedelta(seconds=1), lambda: expired.append(True),
                                on_tick=ticks.append, clock=lambda: now, interval=0.01).start()

    await countdown.wait()

    assert expired == [True]
    assert ticks == [0]
    assert countdown.expired


@pytest.mark.asyncio
async def test_countdown_retries_end_after_backend_failure():
    attempts = []

    async def end():
        attempts.append(1)
        if len(attempts) == 1:
            raise BackendError("offline")

    now = utcnow()
    countdown = BattleCountdown(now, end, clock=lambda: now, interval=0.01).start()
    await asyncio.wait_for(countdown.wait(), timeout=2)

    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_countdown_wait_survives_a_removed_battle(caplog):
    async def end():
        raise NotFound("Battle b1 not found")

    now = utcnow()
    countdown = BattleCountdown(now, end, clock=lambda: now, interval=0.01).start()
    await asyncio.wait_for(countdown.wait(), timeout=2)

    assert not countdown.expired
    assert not countdown.running
    assert "Battle b1 not found" in caplog.text


@pytest.mark.asyncio
async def test_expired_battle_completes_for_every_client(make_client):
    alice_client, bob_client = make_client(), make_client()
    battle = await _ready_battle(BattleService(alice_client), time_limit_seconds=60)
    clock = {"now": utcnow()}

    def now():
        return clock["now"]

    alice = await BattleSession(alice_client, battle.id, "alice", clock=now, tick_interval=0.01).open()
    bob = await BattleSession(bob_client, battle.id, "bob", clock=now, tick_interval=0.01).open()

    await alice.start()
    await alice_client.poll_once()
    await bob_client.poll_once()
    assert alice.countdown.running and bob.countdown.running
    assert 0 < bob.time_left <= 60

    clock["now"] = utcnow() + timedelta(seconds=61)
    await asyncio.wait_for(asyncio.gather(alice.countdown.wait(), bob.countdown.wait()), timeout=2)
    await alice_client.poll_once()
    await bob_client.poll_once()

    for session in (alice, bob):
        assert session.battle.status == BattleStatus.COMPLETED
        assert not session.countdown.running
    assert (await BattleService(bob_client).get_battle(battle.id)).status == BattleStatus.COMPLETED

    await alice.close()
    await bob.close()


@pytest.mark.asyncio
async def test_session_tracks_participants_and_ignores_late_changes(make_client):
    client = make_client()
    battles = BattleService(client)
    battle = await battles.create_battle("alice", "Two Sum", "Find two numbers.")
    updates = []
    session = await BattleSession(client, battle.id, "alice", on_update=updates.append).open()
    assert session.code == battle.starter_code

    await battles.join(battle.id, "bob", "Bob")
    await client.poll_once()
    assert [p.user_id for p in session.participants] == ["bob"]
    assert updates == [session]

    await session.close()
    await battles.join(battle.id, "carol", "Carol")
    await client.poll_once()
    assert [p.user_id for p in session.participants] == ["bob"]
