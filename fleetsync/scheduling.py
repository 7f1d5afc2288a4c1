"""Auto-scheduling of recurring mission definitions.

The recurrence arithmetic is pure (``compute_next_run``, ``due_occurrences``)
and works in the configured schedule timezone. ``AutoScheduleEngine`` reacts
to robot-available and mission-completed signals, serializes its decisions per
robot and claims each due occurrence through a unique dispatch marker before
handing it to the dispatch collaborator, so one occurrence is dispatched at
most once even across processes.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Union
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .collaborators import MissionDispatcher
from .exceptions import InvalidArgument
from .metrics import missions_dispatched_total, scheduling_signals_total
from .models import AutoScheduleFrequency, MissionDefinition, SkipException
from .outcome import Found, Lookup, NotFound
from .repository import FleetRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _occurrences_between(
    frequency: AutoScheduleFrequency, start: datetime, end: datetime, tz: ZoneInfo
) -> Iterator[datetime]:
    """Occurrences in the half-open interval (start, end], ascending."""
    day = start.astimezone(tz).date()
    last = end.astimezone(tz).date()
    while day <= last:
        if frequency.runs_on(day):
            for time_of_day in frequency.time_of_day:
                candidate = datetime.combine(day, time_of_day, tzinfo=tz)
                if start < candidate <= end:
                    yield candidate
        day += timedelta(days=1)


def is_skipped(definition: MissionDefinition, occurrence: datetime) -> bool:
    wanted = SkipException(skip_date=occurrence.date(), time_of_day=occurrence.time())
    return wanted in definition.skips


def _has_rule(definition: MissionDefinition) -> bool:
    frequency = definition.auto_schedule
    return frequency is not None and bool(frequency.time_of_day) and bool(frequency.days_of_week)


def compute_next_run(definition: MissionDefinition, now: datetime, tz: ZoneInfo) -> Optional[datetime]:
    """Next occurrence after ``now`` not covered by a skip exception; None if the definition never recurs."""
    if not _has_rule(definition):
        return None
    # Every week yields at least one occurrence and each skip removes at most one
    horizon = now + timedelta(weeks=len(definition.skips) + 1, days=1)
    for occurrence in _occurrences_between(definition.auto_schedule, now, horizon, tz):
        if not is_skipped(definition, occurrence):
            return occurrence
    return None


def due_occurrences(
    definition: MissionDefinition, now: datetime, tz: ZoneInfo, grace: timedelta
) -> List[datetime]:
    """Non-skipped occurrences that fell due within ``grace`` before ``now``."""
    if not _has_rule(definition):
        return []
    return [
        occurrence
        for occurrence in _occurrences_between(definition.auto_schedule, now - grace, now, tz)
        if not is_skipped(definition, occurrence)
    ]


def _parse_time_of_day(value: Union[time, str]) -> time:
    if isinstance(value, str):
        try:
            value = time.fromisoformat(value)
        except ValueError:
            raise InvalidArgument(f"'{value}' is not a valid time of day") from None
    return value.replace(tzinfo=None)


class AutoScheduleEngine:
    """Consumes scheduling signals and dispatches due auto-scheduled missions."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        mission_dispatcher: MissionDispatcher,
        timezone_name: str = "UTC",
        due_grace_minutes: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.mission_dispatcher = mission_dispatcher
        self.tz = ZoneInfo(timezone_name)
        self.grace = timedelta(minutes=due_grace_minutes)
        self.clock = clock or _utcnow
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._running = False

    # -------------------------
    # Skip exceptions
    # -------------------------
    async def register_skip(
        self, definition_id: str, time_of_day: Union[time, str], now: Optional[datetime] = None
    ) -> Lookup[SkipException]:
        """Skip the next occurrence of ``definition_id`` at ``time_of_day``.

        Raises ``InvalidArgument`` when the definition has no recurrence rule or
        the rule never produces ``time_of_day``.
        """
        time_of_day = _parse_time_of_day(time_of_day)
        now = now or self.clock()
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            result = await repository.definition_by_id(definition_id)
            if isinstance(result, NotFound):
                logger.warning("Mission definition not found", mission_definition_id=definition_id)
                return result
            definition = result.value
            if not _has_rule(definition):
                raise InvalidArgument(f"Mission definition {definition_id} has no auto schedule")
            if time_of_day not in definition.auto_schedule.time_of_day:
                raise InvalidArgument(
                    f"Mission definition {definition_id} is not scheduled at {time_of_day.isoformat()}"
                )

            frequency = definition.auto_schedule.model_copy(update={"time_of_day": [time_of_day]})
            horizon = now + timedelta(weeks=1, days=1)
            occurrence = next(_occurrences_between(frequency, now, horizon, self.tz))
            skip = SkipException(skip_date=occurrence.date(), time_of_day=time_of_day)
            if await repository.add_skip(definition.id, skip):
                await repository.commit()
                logger.info("Skipping auto-scheduled mission", mission_definition_id=definition.id,
                            skip_date=skip.skip_date.isoformat(), time_of_day=time_of_day.isoformat())
        return Found(skip)

    async def purge_expired_skips(self, today: Optional[date] = None) -> int:
        today = today or self.clock().astimezone(self.tz).date()
        async with self.session_factory() as session:
            repository = FleetRepository(session)
            removed = await repository.purge_skips_before(today)
            await repository.commit()
        if removed:
            logger.info("Purged expired skip exceptions", removed=removed)
        return removed

    async def next_run(self, definition_id: str) -> Lookup[Optional[datetime]]:
        async with self.session_factory() as session:
            result = await FleetRepository(session).definition_by_id(definition_id)
        if isinstance(result, NotFound):
            return result
        return Found(compute_next_run(result.value, self.clock(), self.tz))

    # -------------------------
    # Signals
    # -------------------------
    async def on_robot_available(self, robot_id: str) -> None:
        scheduling_signals_total.labels(signal="robot_available").inc()
        await self._evaluate_logged(robot_id, "robot_available")

    async def on_mission_completed(self, robot_id: str) -> None:
        scheduling_signals_total.labels(signal="mission_completed").inc()
        await self._evaluate_logged(robot_id, "mission_completed")

    async def _evaluate_logged(self, robot_id: str, reason: str) -> None:
        try:
            await self.evaluate(robot_id)
        except Exception:
            logger.exception("Auto-schedule evaluation failed", robot_id=robot_id, reason=reason)

    async def evaluate(self, robot_id: str) -> Optional[datetime]:
        """Dispatch at most one due occurrence to a free robot; returns the occurrence dispatched."""
        # Locks are only created for robots that exist
        async with self.session_factory() as session:
            known = await FleetRepository(session).robot_by_id(robot_id)
        if isinstance(known, NotFound):
            logger.warning("Robot not found for auto scheduling", robot_id=robot_id)
            return None

        async with self._locks[robot_id]:
            async with self.session_factory() as session:
                repository = FleetRepository(session)
                result = await repository.robot_by_id(robot_id)
                if isinstance(result, NotFound):
                    logger.warning("Robot removed before auto scheduling", robot_id=robot_id)
                    self._locks.pop(robot_id, None)
                    return None
                robot = result.value
                if not robot.is_free:
                    logger.debug("Robot not free for auto scheduling", robot_id=robot_id,
                                 status=robot.status.value, current_mission_run_id=robot.current_mission_run_id)
                    return None

                now = self.clock()
                definitions = await repository.auto_scheduled_definitions(robot.installation_code)
                candidates = sorted(
                    (
                        (occurrence, definition)
                        for definition in definitions
                        for occurrence in due_occurrences(definition, now, self.tz, self.grace)
                    ),
                    key=lambda pair: (pair[0], pair[1].name),
                )
                for occurrence, definition in candidates:
                    key = occurrence.isoformat()
                    if await repository.occurrence_claimed(definition.id, key):
                        continue
                    if not await repository.claim_occurrence(definition.id, key, robot.id):
                        logger.info("Occurrence already claimed", mission_definition_id=definition.id, occurrence=key)
                        continue

                    try:
                        await self.mission_dispatcher.start_mission(definition, robot, occurrence)
                    except Exception:
                        logger.exception("Failed to dispatch auto-scheduled mission",
                                         mission_definition_id=definition.id, robot_id=robot.id, occurrence=key)
                        await repository.release_occurrence(definition.id, key)
                        await repository.commit()
                        return None

                    missions_dispatched_total.inc()
                    logger.info("Dispatched auto-scheduled mission", mission_definition_id=definition.id,
                                mission_name=definition.name, robot_id=robot.id, occurrence=key)
                    return occurrence
        return None

    # -------------------------
    # Background tick
    # -------------------------
    async def tick(self) -> None:
        async with self.session_factory() as session:
            robot_ids = await FleetRepository(session).list_robot_ids()
        for robot_id in robot_ids:
            await self._evaluate_logged(robot_id, "tick")
        await self.purge_expired_skips()

    async def run_forever(self, interval_seconds: float) -> None:
        self._running = True
        logger.info("Auto-scheduler started", interval_seconds=interval_seconds)
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Auto-scheduler tick failed")
            await asyncio.sleep(interval_seconds)

    def stop(self) -> None:
        self._running = False
