"""Telemetry handlers: one coroutine per event type, each given its own session."""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .collaborators import Notifier, SchedulingSignals
from .dispatcher import EventDispatcher
from .events import (
    BatteryEvent,
    CloudHealthEvent,
    EventType,
    MissionStatusEvent,
    PoseEvent,
    PressureEvent,
    RobotInfoEvent,
    RobotStatusEvent,
    StepStatusEvent,
    TaskStatusEvent,
    TelemetryEvent,
)
from .exceptions import UnrecognizedStatus
from .identity import IdentityResolver
from .mission_runs import MissionRunStateMachine
from .models import Robot
from .notifications import general_failure, notify
from .outcome import Found, NotFound
from .repository import FleetRepository
from .robot_reconciler import RobotStateReconciler
from .task_durations import TaskDurationEstimator
from .task_tracker import TaskStatusTracker

logger = structlog.get_logger(__name__)

PRESSURE_TOLERANCE = 1e-5


class TelemetryHandlers:
    def __init__(
        self,
        signals: SchedulingSignals,
        notifier: Optional[Notifier] = None,
        durations: Optional[TaskDurationEstimator] = None,
        step_retries: int = 0,
        step_retry_delay: float = 0.5,
    ):
        self.signals = signals
        self.notifier = notifier
        self.durations = durations
        self.step_retries = step_retries
        self.step_retry_delay = step_retry_delay

    def register_all(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register(EventType.ROBOT_STATUS, self.on_robot_status)
        dispatcher.register(EventType.ROBOT_INFO, self.on_robot_info)
        dispatcher.register(EventType.MISSION_STATUS, self.on_mission_status)
        dispatcher.register(EventType.TASK_STATUS, self.on_task_status)
        dispatcher.register(EventType.STEP_STATUS, self.on_step_status)
        dispatcher.register(EventType.BATTERY, self.on_battery)
        dispatcher.register(EventType.PRESSURE, self.on_pressure)
        dispatcher.register(EventType.POSE, self.on_pose)
        dispatcher.register(EventType.CLOUD_HEALTH, self.on_cloud_health)

    async def _known_robot(self, repository: FleetRepository, event: TelemetryEvent) -> Optional[Robot]:
        result = await IdentityResolver(repository).robot_for_agent(event.agent_id)
        if isinstance(result, NotFound):
            logger.warning("Received message from unknown agent", agent_id=event.agent_id,
                           robot_name=event.robot_name)
            return None
        return result.value

    def _state_machine(self, repository: FleetRepository) -> MissionRunStateMachine:
        return MissionRunStateMachine(
            repository,
            self.signals,
            notifier=self.notifier,
            durations=self.durations,
            step_retries=self.step_retries,
            step_retry_delay=self.step_retry_delay,
        )

    # -------------------------
    # Robot state
    # -------------------------
    async def on_robot_status(self, event: RobotStatusEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        robot = await self._known_robot(repository, event)
        if robot is None:
            return
        await RobotStateReconciler(repository, self.signals).reconcile_status(robot, event.status)

    async def on_robot_info(self, event: RobotInfoEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        result = await IdentityResolver(repository).robot_for_agent(event.agent_id)
        robot = result.value if isinstance(result, Found) else None
        outcome = await RobotStateReconciler(repository, self.signals).reconcile_info(robot, event)
        if outcome.written and outcome.robot is not None:
            await notify(self.notifier, "Robot updated", outcome.robot.model_dump(mode="json"),
                         outcome.robot.installation_code)

    # -------------------------
    # Missions, tasks and steps
    # -------------------------
    async def on_mission_status(self, event: MissionStatusEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        try:
            result = await self._state_machine(repository).advance_status(
                event.mission_id, event.status, agent_id=event.agent_id
            )
        except UnrecognizedStatus as e:
            logger.error("Failed to parse mission status, mission run not updated",
                         mission_id=event.mission_id, error=str(e))
            return
        if isinstance(result, NotFound):
            logger.debug("Mission run not tracked", mission_id=event.mission_id)

    async def on_task_status(self, event: TaskStatusEvent, session: AsyncSession) -> None:
        tracker = TaskStatusTracker(FleetRepository(session), self.notifier)
        try:
            await tracker.update_task_status(event.task_id, event.status, event.mission_id)
        except UnrecognizedStatus as e:
            logger.error("Failed to parse task status, task not updated", task_id=event.task_id, error=str(e))

    async def on_step_status(self, event: StepStatusEvent, session: AsyncSession) -> None:
        tracker = TaskStatusTracker(FleetRepository(session), self.notifier)
        try:
            await tracker.update_step_status(event.step_id, event.step_type, event.status, event.mission_id)
        except UnrecognizedStatus as e:
            logger.error("Failed to parse inspection step, step not updated", step_id=event.step_id, error=str(e))

    # -------------------------
    # Scalar telemetry
    # -------------------------
    async def on_battery(self, event: BatteryEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        robot = await self._known_robot(repository, event)
        if robot is None:
            return
        values = {"battery_level": event.battery_level}
        if event.battery_state is not None:
            values["battery_state"] = event.battery_state.value
        if robot.battery_level == event.battery_level and (
            event.battery_state is None or robot.battery_state == event.battery_state
        ):
            return
        await repository.update_robot(robot.id, values)
        await repository.commit()

    async def on_pressure(self, event: PressureEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        robot = await self._known_robot(repository, event)
        if robot is None:
            return
        if robot.pressure_level is not None and abs(robot.pressure_level - event.pressure_level) <= PRESSURE_TOLERANCE:
            return
        await repository.update_robot(robot.id, {"pressure_level": event.pressure_level})
        await repository.commit()

    async def on_pose(self, event: PoseEvent, session: AsyncSession) -> None:
        repository = FleetRepository(session)
        robot = await self._known_robot(repository, event)
        if robot is None:
            return
        await repository.update_robot(robot.id, {"pose": event.pose.model_dump(mode="json")})
        await repository.commit()

    async def on_cloud_health(self, event: CloudHealthEvent, session: AsyncSession) -> None:
        robot = await self._known_robot(FleetRepository(session), event)
        if robot is None:
            return
        robot_name = event.robot_name or robot.name
        logger.warning("Robot reported failed telemetry request", robot_id=robot.id, robot_name=robot_name)
        await notify(
            self.notifier,
            "Alert",
            general_failure(robot, "Failed Telemetry", f"Failed telemetry request for robot {robot_name}."),
            robot.installation_code,
        )
