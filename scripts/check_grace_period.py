import asyncio

from backend.roomhub.coordinator import RoomLifecycleCoordinator
from backend.roomhub.grace import GracePeriodScheduler
from backend.roomhub.repository import InMemoryRoomRepository
from backend.roomhub.rooms import RoomStatus


async def main():
    repo = InMemoryRoomRepository()
    coordinator = RoomLifecycleCoordinator(repo, GracePeriodScheduler(duration=0.5))

    access = await coordinator.create_room("host")
    code = access.room.code

    # Host drops and reconnects inside the grace window
    await coordinator.leave_room("host", code)
    assert coordinator.has_grace_period(code), "Grace period should start when host leaves"
    await asyncio.sleep(0.2)
    await coordinator.join_room("host", code)
    if coordinator.has_grace_period(code):
        raise SystemExit("FAIL: Rejoin did not cancel the grace period")
    await asyncio.sleep(0.5)
    room = await repo.get_room_by_code(code)
    if room.status != RoomStatus.active:
        raise SystemExit("FAIL: Room closed although the host came back")
    print("OK: Room stayed active after rejoin within grace period")

    # Host leaves for good
    await coordinator.leave_room("host", code)
    await asyncio.sleep(0.7)
    await coordinator.scheduler.drain()
    room = await repo.get_room_by_code(code)
    if room.status != RoomStatus.inactive:
        raise SystemExit("FAIL: Room not closed after grace period expiry")
    print("OK: Room closed after grace period expiry")

if __name__ == "__main__":
    asyncio.run(main())
