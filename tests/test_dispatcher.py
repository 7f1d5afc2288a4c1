import asyncio

import pytest

from fleetsync.dispatcher import EventDispatcher
from fleetsync.events import EventType, MissionStatusEvent, PressureEvent, RobotStatusEvent
from fleetsync.models import RobotStatus


def _status(agent_id, status=RobotStatus.AVAILABLE):
    return RobotStatusEvent(agent_id=agent_id, status=status)


@pytest.mark.asyncio
async def test_events_are_routed_by_type(session_factory):
    dispatcher = EventDispatcher(session_factory, workers_per_channel=2)
    seen = []

    async def on_status(event, session):
        seen.append(("status", event.agent_id))

    async def on_pressure(event, session):
        seen.append(("pressure", event.pressure_level))

    dispatcher.register(EventType.ROBOT_STATUS, on_status)
    dispatcher.register(EventType.PRESSURE, on_pressure)
    await dispatcher.start()
    try:
        await dispatcher.submit(_status("a1"))
        await dispatcher.submit(PressureEvent(agent_id="a1", pressure_level=1.5))
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    assert sorted(seen) == [("pressure", 1.5), ("status", "a1")]


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_other_events(session_factory):
    dispatcher = EventDispatcher(session_factory, workers_per_channel=1)
    handled = []

    async def flaky(event, session):
        if event.agent_id == "bad":
            raise RuntimeError("handler crashed")
        handled.append(event.agent_id)

    dispatcher.register(EventType.ROBOT_STATUS, flaky)
    await dispatcher.start()
    try:
        for agent_id in ("a1", "bad", "a2"):
            await dispatcher.submit(_status(agent_id))
        await dispatcher.join()
        assert dispatcher.running
    finally:
        await dispatcher.stop()

    assert handled == ["a1", "a2"]


@pytest.mark.asyncio
async def test_each_event_gets_its_own_session(session_factory):
    dispatcher = EventDispatcher(session_factory, workers_per_channel=4)
    sessions = []
    both_started = asyncio.Event()

    async def slow(event, session):
        sessions.append(session)
        if len(sessions) == 2:
            both_started.set()
        await asyncio.wait_for(both_started.wait(), timeout=1)

    dispatcher.register(EventType.ROBOT_STATUS, slow)
    await dispatcher.start()
    try:
        await dispatcher.submit(_status("a1"))
        await dispatcher.submit(_status("a2"))
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    assert len(sessions) == 2
    assert sessions[0] is not sessions[1]


@pytest.mark.asyncio
async def test_unregistered_event_type_is_refused(session_factory):
    dispatcher = EventDispatcher(session_factory)
    assert not await dispatcher.submit(MissionStatusEvent(agent_id="a1", mission_id="M1", status="failed"))
    assert not dispatcher.submit_nowait(_status("a1"))


@pytest.mark.asyncio
async def test_full_channel_drops_without_blocking(session_factory):
    dispatcher = EventDispatcher(session_factory, channel_capacity=1)

    async def noop(event, session):
        pass

    dispatcher.register(EventType.ROBOT_STATUS, noop)

    assert dispatcher.submit_nowait(_status("a1"))
    assert not dispatcher.submit_nowait(_status("a2"))
