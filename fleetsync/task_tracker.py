"""Task and inspection step status updates within a mission run."""

from typing import Optional, Union

import structlog

from .collaborators import Notifier
from .models import IGNORED_STEP_TYPES, StepStatus, StepType, TaskStatus, parse_token
from .notifications import notify, run_snapshot
from .outcome import Found, Lookup, NotFound
from .repository import FleetRepository

logger = structlog.get_logger(__name__)


def is_ignored_step(step_type: Union[StepType, str]) -> bool:
    """Navigation and arm steps carry no inspection value."""
    return parse_token(StepType, step_type, "step type") in IGNORED_STEP_TYPES


class TaskStatusTracker:
    def __init__(self, repository: FleetRepository, notifier: Optional[Notifier] = None):
        self.repository = repository
        self.notifier = notifier

    async def update_task_status(
        self, external_task_id: str, status: Union[TaskStatus, str], mission_id: Optional[str] = None
    ) -> Lookup[str]:
        status = parse_token(TaskStatus, status, "task status")
        result = await self.repository.update_task_status(external_task_id, status)
        if isinstance(result, NotFound):
            logger.warning("Task not found", task_id=external_task_id, mission_id=mission_id)
            return result
        await self.repository.commit()
        logger.debug("Updated task status", task_id=external_task_id, status=status.value)
        await self._republish(mission_id)
        return result

    async def update_step_status(
        self,
        external_step_id: str,
        step_type: Union[StepType, str],
        status: Union[StepStatus, str],
        mission_id: Optional[str] = None,
    ) -> Optional[Lookup[str]]:
        """Returns ``None`` when the step type is filtered out before any lookup."""
        if is_ignored_step(step_type):
            return None
        status = parse_token(StepStatus, status, "step status")
        result = await self.repository.update_step_status(external_step_id, status)
        if isinstance(result, NotFound):
            logger.warning("Inspection step not found", step_id=external_step_id, mission_id=mission_id)
            return result
        await self.repository.commit()
        logger.debug("Updated inspection step status", step_id=external_step_id, status=status.value)
        await self._republish(mission_id)
        return result

    async def _republish(self, mission_id: Optional[str]) -> None:
        if not mission_id:
            return
        run = await self.repository.run_by_external_id(mission_id)
        if not isinstance(run, Found):
            logger.warning("Mission run not found when publishing update", mission_id=mission_id)
            return
        await notify(self.notifier, "Mission run updated", run_snapshot(run.value), run.value.installation_code)
