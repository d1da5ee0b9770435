import asyncio
from roomsync import Portal, Settings
from roomsync.battle import format_time

SOLUTION = """function solution(nums, target) {
  const seen = new Map();
  for (let i = 0; i < nums.length; i++) {
    if (seen.has(target - nums[i])) return [seen.get(target - nums[i]), i];
    seen.set(nums[i], i);
  }
  return [];
}"""


async def main():
    portal = await Portal(Settings(db_path="example.db", poll_interval=0.2)).start()
    battle = await portal.battles.create_battle(
        "alice", "Two Sum", "Return the indices of the two numbers that add up to target.",
        time_limit_seconds=5,
    )
    await portal.battles.join(battle.id, "alice", "Alice")
    await portal.battles.join(battle.id, "bob", "Bob")

    def show(session):
        print(f"[{format_time(session.time_left)}] {session.battle.status.value}: "
              + ", ".join(f"{p.username}={p.score}" for p in session.participants))

    alice = await portal.open_battle(battle.id, "alice", on_update=show)
    bob = await portal.open_battle(battle.id, "bob", on_update=show)

    await alice.start()
    await asyncio.sleep(1)
    await alice.submit(SOLUTION)
    await bob.submit("function solution() {}")

    # Both countdowns race to end the battle; the second attempt is a no-op
    await asyncio.sleep(6)
    await alice.close()
    await bob.close()
    await portal.stop()


if __name__ == "__main__":
    asyncio.run(main())
