"""Mission run status transitions and the completion pipeline."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import structlog

from .collaborators import Notifier, SchedulingSignals
from .metrics import completion_step_failures_total
from .models import MissionRun, MissionStatus, Robot, parse_token
from .notifications import general_failure, notify, run_snapshot
from .outcome import Found, Lookup, NotFound, RobotNotFound
from .repository import FleetRepository
from .task_durations import TaskDurationEstimator

logger = structlog.get_logger(__name__)

# Concurrent writers can move a run between our read and our write
MAX_TRANSITION_ATTEMPTS = 3


def parse_status(raw: str) -> MissionStatus:
    """Map an agent mission status token (``in_progress``, ``successful``...) to MissionStatus."""
    return parse_token(MissionStatus, raw, "mission status")


@dataclass
class RunTransition:
    run: MissionRun
    previous: MissionStatus
    changed: bool = False

    @property
    def completed(self) -> bool:
        return self.changed and self.run.status.is_terminal


class MissionRunStateMachine:
    """Advances runs from agent status events.

    Terminal transitions run five completion steps. Each step handles its own
    failures (and is retried ``step_retries`` times on unexpected errors), so
    a failing step never stops the ones after it.
    """

    def __init__(
        self,
        repository: FleetRepository,
        signals: SchedulingSignals,
        notifier: Optional[Notifier] = None,
        durations: Optional[TaskDurationEstimator] = None,
        step_retries: int = 0,
        step_retry_delay: float = 0.5,
    ):
        self.repository = repository
        self.signals = signals
        self.notifier = notifier
        self.durations = durations
        self.step_retries = step_retries
        self.step_retry_delay = step_retry_delay

    async def advance_status(
        self,
        external_mission_id: str,
        new_status: Union[MissionStatus, str],
        agent_id: Optional[str] = None,
    ) -> Lookup[RunTransition]:
        if not isinstance(new_status, MissionStatus):
            new_status = parse_status(new_status)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            result = await self.repository.run_by_external_id(external_mission_id)
            if isinstance(result, NotFound):
                return result
            run = result.value
            previous = run.status

            if previous == new_status:
                return Found(RunTransition(run, previous))
            if previous.is_terminal:
                logger.warning("Ignoring status update for completed mission run", mission_run_id=run.id,
                               mission_id=external_mission_id, status=previous.value, received=new_status.value)
                return Found(RunTransition(run, previous))

            if await self.repository.compare_and_set_run_status(run.id, previous, new_status):
                await self.repository.commit()
                run.status = new_status
                break
            await self.repository.session.rollback()
        else:
            logger.warning("Mission run kept changing underneath status update", mission_id=external_mission_id,
                           received=new_status.value)
            return Found(RunTransition(run, run.status))

        logger.info("Mission run status updated", mission_run_id=run.id, mission_id=external_mission_id,
                    previous=previous.value, status=new_status.value)
        await notify(self.notifier, "Mission run updated", run_snapshot(run), run.installation_code)

        if new_status.is_terminal:
            await self._complete(run, agent_id)
        return Found(RunTransition(run, previous, changed=True))

    # -------------------------
    # Completion pipeline
    # -------------------------
    async def _complete(self, run: MissionRun, agent_id: Optional[str]) -> None:
        robot = await self._resolve_robot(run, agent_id)
        await self._run_step("clear_current_run", self._clear_current_run, run, robot)
        await self._run_step("localization_result", self._apply_localization_result, run, robot)
        await self._run_step("mission_completed_signal", self._signal_completed, run, robot, retries=0)
        await self._run_step("last_run", self._record_last_run, run)
        self._schedule_duration_recompute(robot)
        logger.info("Completed mission run", mission_run_id=run.id, status=run.status.value,
                    robot_id=robot.id if robot else run.robot_id)

    async def _resolve_robot(self, run: MissionRun, agent_id: Optional[str]) -> Optional[Robot]:
        result: Lookup[Robot] = RobotNotFound(run.robot_id or agent_id or "")
        try:
            if run.robot_id:
                result = await self.repository.robot_by_id(run.robot_id)
            if isinstance(result, NotFound) and agent_id:
                result = await self.repository.robot_by_agent_id(agent_id)
        except Exception:
            logger.exception("Failed to look up robot for completed mission run", mission_run_id=run.id)
            await self.repository.session.rollback()
            return None
        if isinstance(result, NotFound):
            logger.error("Could not find robot for completed mission run", mission_run_id=run.id,
                         robot_id=run.robot_id, agent_id=agent_id)
            return None
        return result.value

    async def _run_step(self, name: str, step: Callable[..., Awaitable[None]], *args,
                        retries: Optional[int] = None) -> bool:
        attempts = 1 + (self.step_retries if retries is None else retries)
        for attempt in range(1, attempts + 1):
            try:
                await step(*args)
                return True
            except Exception:
                completion_step_failures_total.labels(step=name).inc()
                logger.exception("Mission completion step failed", step=name, attempt=attempt, attempts=attempts)
                await self.repository.session.rollback()
                if attempt < attempts:
                    await asyncio.sleep(self.step_retry_delay)
        return False

    async def _clear_current_run(self, run: MissionRun, robot: Optional[Robot]) -> None:
        if robot is None:
            return
        if robot.current_mission_run_id not in (None, run.id):
            logger.info("Robot already moved on to another mission run", robot_id=robot.id,
                        current_mission_run_id=robot.current_mission_run_id, mission_run_id=run.id)
            return
        result = await self.repository.set_current_mission_run(robot.id, None)
        if isinstance(result, NotFound):
            logger.error("Robot not found when clearing current mission run", robot_id=robot.id)
            return
        await self.repository.commit()
        robot.current_mission_run_id = None

    async def _apply_localization_result(self, run: MissionRun, robot: Optional[Robot]) -> None:
        if not run.is_localization_run:
            return
        if robot is None:
            logger.warning("Skipping localization result, robot unknown", mission_run_id=run.id)
            return

        if run.status.is_successful:
            result = await self.repository.set_current_area(robot.id, run.area_id)
        else:
            result = await self.repository.set_current_area(robot.id, None)
        if isinstance(result, NotFound):
            logger.error("Robot not found when updating current area", robot_id=robot.id)
            return
        await self.repository.commit()

        if run.status.is_successful:
            robot.current_area_id = run.area_id
            return
        robot.current_area_id = None
        logger.error("Localization mission failed", robot_id=robot.id, robot_name=robot.name, mission_run_id=run.id)
        await notify(
            self.notifier,
            "Alert",
            general_failure(robot, "Failed Localization Mission", f"Failed localization mission for robot {robot.name}."),
            run.installation_code or robot.installation_code,
        )

    async def _signal_completed(self, run: MissionRun, robot: Optional[Robot]) -> None:
        robot_id = robot.id if robot else run.robot_id
        if robot_id is None:
            logger.warning("Completed mission run has no robot to release", mission_run_id=run.id)
            return
        await self.signals.on_mission_completed(robot_id)

    async def _record_last_run(self, run: MissionRun) -> None:
        if run.mission_definition_id is None:
            logger.info("Mission run has no mission definition", mission_run_id=run.id)
            return
        result = await self.repository.set_last_run(run.mission_definition_id, run.id, run.status.is_successful)
        if isinstance(result, NotFound):
            logger.warning("Mission definition not found when setting last mission run",
                           mission_definition_id=run.mission_definition_id, mission_run_id=run.id)
            return
        await self.repository.commit()

    def _schedule_duration_recompute(self, robot: Optional[Robot]) -> None:
        if self.durations is None or robot is None or not robot.model:
            return
        try:
            self.durations.schedule_recompute(robot.model)
        except Exception:
            logger.exception("Could not schedule task duration recompute", robot_model=robot.model)
