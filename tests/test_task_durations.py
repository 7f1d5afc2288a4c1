from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from fleetsync.db import mission_tasks
from fleetsync.mission_runs import MissionRunStateMachine
from fleetsync.models import MissionStatus, TaskStatus, TaskType
from fleetsync.repository import FleetRepository
from fleetsync.task_durations import TaskDurationEstimator

START = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


async def _finished_run(seed, robot, mission_id, minutes):
    run = await seed.run(mission_id, robot=robot, link_robot=False, status=MissionStatus.SUCCESSFUL)
    async with seed.session_factory() as session:
        await session.execute(
            update(mission_tasks)
            .where(mission_tasks.c.mission_run_id == run.id)
            .values(status=TaskStatus.SUCCESSFUL.value, started_at=START, ended_at=START + timedelta(minutes=minutes))
        )
        await session.commit()
    return run


@pytest.mark.asyncio
async def test_average_over_recent_inspection_tasks(seed, session_factory):
    robot = await seed.robot()
    await _finished_run(seed, robot, "M1", 10)
    await _finished_run(seed, robot, "M2", 20)

    average = await TaskDurationEstimator(session_factory).recompute(robot.model)

    assert average == pytest.approx(15 * 60)
    async with session_factory() as session:
        assert await FleetRepository(session).task_duration(robot.model) == pytest.approx(900)


@pytest.mark.asyncio
async def test_sample_size_limits_history(seed, session_factory):
    robot = await seed.robot()
    for index, minutes in enumerate([10, 20, 30]):
        await _finished_run(seed, robot, f"M{index}", minutes)

    average = await TaskDurationEstimator(session_factory, sample_size=1).recompute(robot.model)

    assert average == pytest.approx(30 * 60)


@pytest.mark.asyncio
async def test_no_history_leaves_estimate_unset(seed, session_factory):
    await seed.robot(model="NewModel")
    assert await TaskDurationEstimator(session_factory).recompute("NewModel") is None


@pytest.mark.asyncio
async def test_completion_schedules_background_recompute(seed, session_factory, repository, signals):
    robot = await seed.robot()
    await _finished_run(seed, robot, "M1", 12)
    await seed.run("M2", robot=robot, task_types=[TaskType.INSPECTION])
    durations = TaskDurationEstimator(session_factory)

    machine = MissionRunStateMachine(repository, signals, durations=durations, step_retry_delay=0)
    await machine.advance_status("M2", "failed")
    await durations.wait_idle()

    async with session_factory() as session:
        assert await FleetRepository(session).task_duration(robot.model) == pytest.approx(12 * 60)


@pytest.mark.asyncio
async def test_recompute_failure_is_contained(seed, session_factory, repository, signals, monkeypatch):
    robot = await seed.robot()
    await seed.run("M1", robot=robot)
    durations = TaskDurationEstimator(session_factory)

    async def broken(model):
        raise RuntimeError("estimates table locked")

    monkeypatch.setattr(durations, "recompute", broken)

    result = await MissionRunStateMachine(repository, signals, durations=durations).advance_status("M1", "successful")
    await durations.wait_idle()

    assert result.value.completed
    assert (await repository.run_by_external_id("M1")).value.status == MissionStatus.SUCCESSFUL
