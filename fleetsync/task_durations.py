"""Average inspection-task duration per robot model, used for ETA display."""

import asyncio
from typing import Optional, Set

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .repository import FleetRepository

logger = structlog.get_logger(__name__)


class TaskDurationEstimator:
    """Recomputes estimates in the background; failures are logged and dropped."""

    def __init__(self, session_factory: async_sessionmaker, sample_size: int = 50):
        self.session_factory = session_factory
        self.sample_size = sample_size
        self._pending: Set[asyncio.Task] = set()

    def schedule_recompute(self, robot_model: str) -> asyncio.Task:
        task = asyncio.create_task(self._recompute_logged(robot_model))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _recompute_logged(self, robot_model: str) -> None:
        try:
            await self.recompute(robot_model)
        except Exception:
            logger.exception("Task duration recompute failed", robot_model=robot_model)

    async def recompute(self, robot_model: str) -> Optional[float]:
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            durations = await repository.recent_task_durations(robot_model, self.sample_size)
            if not durations:
                logger.debug("No completed tasks to estimate from", robot_model=robot_model)
                return None
            average = sum(durations) / len(durations)
            await repository.upsert_task_duration(robot_model, average, len(durations))
            await repository.commit()
        logger.info("Updated average task duration", robot_model=robot_model,
                    average_seconds=round(average, 1), samples=len(durations))
        return average

    async def wait_idle(self) -> None:
        """Wait for every scheduled recompute to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
