import asyncio
from datetime import datetime, time
from typing import Any, Dict, List, Optional

import pytest

from fleetsync.db import create_all, create_engine, create_session_factory
from fleetsync.models import (
    AutoScheduleFrequency,
    Inspection,
    MissionDefinition,
    MissionRun,
    MissionStatus,
    MissionTask,
    Robot,
    RobotCapability,
    RobotStatus,
    SkipException,
    StepType,
    TaskType,
    VideoStream,
    Weekday,
)
from fleetsync.repository import FleetRepository, new_id


class RecordingSignals:
    def __init__(self):
        self.available: List[str] = []
        self.completed: List[str] = []

    async def on_robot_available(self, robot_id: str) -> None:
        self.available.append(robot_id)

    async def on_mission_completed(self, robot_id: str) -> None:
        self.completed.append(robot_id)


class RecordingNotifier:
    def __init__(self):
        self.published: List[tuple] = []

    async def publish(self, event_name: str, payload: Optional[Dict[str, Any]], installation_code: Optional[str] = None) -> None:
        self.published.append((event_name, payload, installation_code))

    def named(self, event_name: str) -> List[tuple]:
        return [p for p in self.published if p[0] == event_name]


class RecordingMissionDispatcher:
    """Records start instructions; ``delay`` widens race windows in concurrency tests."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.started: List[tuple] = []

    async def start_mission(self, definition: MissionDefinition, robot: Robot, occurrence: datetime) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("Not connected to MQTT broker")
        self.started.append((definition.id, robot.id, occurrence))


class Seeder:
    """Writes fixtures through their own sessions so tests see committed rows."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def installation(self, code: str = "SITE-A", name: Optional[str] = None):
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            installation = await repository.add_installation(code, name)
            await repository.commit()
        return installation

    async def robot(self, agent_id: str = "agent-1", **overrides) -> Robot:
        values = dict(
            id=new_id(),
            agent_id=agent_id,
            name=f"robot-{agent_id}",
            model="TaurobInspector",
            host="10.0.0.5",
            port=3000,
            installation_code="SITE-A",
            capabilities=[RobotCapability.TAKE_IMAGE, RobotCapability.RETURN_TO_HOME],
            video_streams=[VideoStream(name="front", url="rtsp://cam/front", type="rtsp")],
            status=RobotStatus.AVAILABLE,
        )
        values.update(overrides)
        robot = Robot(**values)
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            await repository.create_robot(robot)
            await repository.commit()
        return robot

    async def run(
        self,
        external_mission_id: str = "M100",
        robot: Optional[Robot] = None,
        task_types: Optional[List[TaskType]] = None,
        link_robot: bool = True,
        **overrides,
    ) -> MissionRun:
        tasks = []
        for order, task_type in enumerate(task_types or [TaskType.INSPECTION]):
            task_id = new_id()
            tasks.append(
                MissionTask(
                    id=task_id,
                    external_task_id=f"{external_mission_id}-task-{order}",
                    task_order=order,
                    task_type=task_type,
                    inspections=[
                        Inspection(
                            id=new_id(),
                            external_step_id=f"{external_mission_id}-step-{order}",
                            step_type=StepType.TAKE_IMAGE,
                        )
                    ],
                )
            )
        values = dict(
            id=new_id(),
            external_mission_id=external_mission_id,
            name="Weekly compressor check",
            robot_id=robot.id if robot else None,
            installation_code="SITE-A",
            area_id="area-1",
            status=MissionStatus.PENDING,
            tasks=tasks,
        )
        values.update(overrides)
        run = MissionRun(**values)
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            await repository.add_mission_run(run)
            if robot is not None and link_robot:
                await repository.set_current_mission_run(robot.id, run.id)
            await repository.commit()
        return run

    async def definition(
        self,
        name: str = "Weekly compressor check",
        times: Optional[List[time]] = None,
        days: Optional[List[Weekday]] = None,
        skips: Optional[List[SkipException]] = None,
        auto_schedule: bool = True,
        **overrides,
    ) -> MissionDefinition:
        frequency = None
        if auto_schedule:
            frequency = AutoScheduleFrequency(
                time_of_day=times if times is not None else [time(8, 0)],
                days_of_week=days if days is not None else [Weekday.MONDAY],
            )
        values = dict(
            id=new_id(),
            name=name,
            installation_code="SITE-A",
            auto_schedule=frequency,
            skips=skips or [],
        )
        values.update(overrides)
        definition = MissionDefinition(**values)
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            await repository.add_mission_definition(definition)
            await repository.commit()
        return definition


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetsync.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(session):
    return FleetRepository(session)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def signals():
    return RecordingSignals()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mission_dispatcher():
    return RecordingMissionDispatcher()


@pytest.fixture
def make_mission_dispatcher():
    return RecordingMissionDispatcher
