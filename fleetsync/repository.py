"""Persistence operations used by the reconciliation core.

All reads return ``Found``/``NotFound`` outcomes. Writes that guard against
stale state do so in the SQL predicate and report whether a row changed, so a
caller never overwrites a value that another event already moved.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import (
    inspections,
    installations,
    mission_definitions,
    mission_runs,
    mission_tasks,
    robots,
    scheduled_dispatches,
    skip_exceptions,
    task_durations,
)
from .models import (
    AutoScheduleFrequency,
    Inspection,
    Installation,
    MissionDefinition,
    MissionRun,
    MissionStatus,
    MissionTask,
    Robot,
    RobotStatus,
    SkipException,
    StepStatus,
    TaskStatus,
    TaskType,
)
from .outcome import (
    DefinitionNotFound,
    Found,
    InstallationNotFound,
    Lookup,
    RobotNotFound,
    RunNotFound,
    StepNotFound,
    TaskNotFound,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _column_values(model, exclude=None) -> Dict[str, Any]:
    """Model fields as column values, enums flattened to their stored string."""
    values = model.model_dump(exclude=exclude)
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _robot_from_row(row: Dict[str, Any]) -> Robot:
    data = dict(row)
    data["video_streams"] = data.get("video_streams") or []
    return Robot.model_validate(data)


def _definition_from_row(row: Dict[str, Any], skips: List[SkipException]) -> MissionDefinition:
    data = dict(row)
    if data.get("auto_schedule"):
        data["auto_schedule"] = AutoScheduleFrequency.model_validate(data["auto_schedule"])
    data["skips"] = skips
    return MissionDefinition.model_validate(data)


class FleetRepository:
    """Data access for one unit of work; the caller owns the session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    # -------------------------
    # Installations
    # -------------------------
    async def installation_by_name(self, name: str) -> Lookup[Installation]:
        wanted = name.strip().lower()
        res = await self.session.execute(
            select(installations).where(
                or_(
                    func.lower(installations.c.installation_code) == wanted,
                    func.lower(installations.c.name) == wanted,
                )
            )
        )
        row = res.mappings().first()
        if not row:
            return InstallationNotFound(name)
        return Found(Installation.model_validate(dict(row)))

    async def add_installation(self, installation_code: str, name: Optional[str] = None) -> Installation:
        installation = Installation(id=new_id(), installation_code=installation_code, name=name or installation_code)
        await self.session.execute(insert(installations).values(**installation.model_dump()))
        return installation

    # -------------------------
    # Robots
    # -------------------------
    async def robot_by_agent_id(self, agent_id: str) -> Lookup[Robot]:
        res = await self.session.execute(select(robots).where(robots.c.agent_id == agent_id))
        row = res.mappings().first()
        if not row:
            return RobotNotFound(agent_id)
        return Found(_robot_from_row(row))

    async def robot_by_id(self, robot_id: str) -> Lookup[Robot]:
        res = await self.session.execute(select(robots).where(robots.c.id == robot_id))
        row = res.mappings().first()
        if not row:
            return RobotNotFound(robot_id)
        return Found(_robot_from_row(row))

    async def list_robot_ids(self, include_deprecated: bool = False) -> List[str]:
        query = select(robots.c.id)
        if not include_deprecated:
            query = query.where(robots.c.deprecated == False)  # noqa: E712
        res = await self.session.execute(query)
        return [r[0] for r in res.all()]

    async def create_robot(self, robot: Robot) -> Robot:
        now = _now()
        values = robot.model_dump(mode="json")
        await self.session.execute(insert(robots).values(**values, created_at=now, updated_at=now))
        return robot

    async def update_robot(self, robot_id: str, values: Dict[str, Any]) -> bool:
        res = await self.session.execute(
            update(robots).where(robots.c.id == robot_id).values(**values, updated_at=_now())
        )
        return res.rowcount > 0

    async def set_robot_status(self, robot_id: str, status: RobotStatus) -> bool:
        """Write the status only if it differs from the stored one."""
        res = await self.session.execute(
            update(robots)
            .where(robots.c.id == robot_id, robots.c.status != status.value)
            .values(status=status.value, updated_at=_now())
        )
        return res.rowcount > 0

    async def set_current_mission_run(self, robot_id: str, run_id: Optional[str]) -> Lookup[str]:
        if not await self.update_robot(robot_id, {"current_mission_run_id": run_id}):
            return RobotNotFound(robot_id)
        return Found(robot_id)

    async def set_current_area(self, robot_id: str, area_id: Optional[str]) -> Lookup[str]:
        if not await self.update_robot(robot_id, {"current_area_id": area_id}):
            return RobotNotFound(robot_id)
        return Found(robot_id)

    # -------------------------
    # Mission runs, tasks and inspection steps
    # -------------------------
    async def run_by_external_id(self, external_mission_id: str) -> Lookup[MissionRun]:
        res = await self.session.execute(
            select(mission_runs)
            .where(mission_runs.c.external_mission_id == external_mission_id)
            .order_by(mission_runs.c.created_at.desc())
        )
        rows = res.mappings().all()
        if not rows:
            return RunNotFound(external_mission_id)
        # The open run wins; otherwise the most recent terminal one
        row = next((r for r in rows if not MissionStatus(r["status"]).is_terminal), rows[0])
        return Found(await self._load_run(row))

    async def _load_run(self, row: Dict[str, Any]) -> MissionRun:
        task_res = await self.session.execute(
            select(mission_tasks)
            .where(mission_tasks.c.mission_run_id == row["id"])
            .order_by(mission_tasks.c.task_order)
        )
        task_rows = task_res.mappings().all()
        step_rows: List[Dict[str, Any]] = []
        if task_rows:
            step_res = await self.session.execute(
                select(inspections).where(inspections.c.mission_task_id.in_([t["id"] for t in task_rows]))
            )
            step_rows = list(step_res.mappings().all())
        tasks = []
        for t in task_rows:
            steps = [
                Inspection.model_validate(dict(s))
                for s in step_rows
                if s["mission_task_id"] == t["id"]
            ]
            tasks.append(MissionTask.model_validate({**dict(t), "inspections": steps}))
        return MissionRun.model_validate({**dict(row), "tasks": tasks})

    async def add_mission_run(self, run: MissionRun) -> MissionRun:
        await self.session.execute(
            insert(mission_runs).values(**_column_values(run, exclude={"tasks"}), created_at=_now())
        )
        for task in run.tasks:
            await self.session.execute(
                insert(mission_tasks).values(
                    **_column_values(task, exclude={"inspections"}), mission_run_id=run.id
                )
            )
            for step in task.inspections:
                await self.session.execute(
                    insert(inspections).values(**_column_values(step), mission_task_id=task.id)
                )
        return run

    async def compare_and_set_run_status(
        self, run_id: str, expected: MissionStatus, new: MissionStatus
    ) -> bool:
        """Move a run from ``expected`` to ``new``; False if another writer got there first."""
        now = _now()
        values: Dict[str, Any] = {"status": new.value}
        if new == MissionStatus.IN_PROGRESS:
            values["started_at"] = func.coalesce(mission_runs.c.started_at, now)
        if new.is_terminal:
            values["ended_at"] = now
        res = await self.session.execute(
            update(mission_runs)
            .where(mission_runs.c.id == run_id, mission_runs.c.status == expected.value)
            .values(**values)
        )
        return res.rowcount > 0

    async def update_task_status(self, external_task_id: str, status: TaskStatus) -> Lookup[str]:
        res = await self.session.execute(
            select(mission_tasks.c.id)
            .select_from(mission_tasks.join(mission_runs, mission_tasks.c.mission_run_id == mission_runs.c.id))
            .where(mission_tasks.c.external_task_id == external_task_id)
            .order_by(mission_runs.c.created_at.desc())
        )
        task_id = res.scalars().first()
        if task_id is None:
            return TaskNotFound(external_task_id)
        await self.session.execute(
            update(mission_tasks)
            .where(mission_tasks.c.id == task_id)
            .values(**self._stamped(mission_tasks, status.value, status.is_terminal, status == TaskStatus.IN_PROGRESS))
        )
        return Found(task_id)

    async def update_step_status(self, external_step_id: str, status: StepStatus) -> Lookup[str]:
        res = await self.session.execute(
            select(inspections.c.id)
            .select_from(
                inspections.join(mission_tasks, inspections.c.mission_task_id == mission_tasks.c.id)
                .join(mission_runs, mission_tasks.c.mission_run_id == mission_runs.c.id)
            )
            .where(inspections.c.external_step_id == external_step_id)
            .order_by(mission_runs.c.created_at.desc())
        )
        step_id = res.scalars().first()
        if step_id is None:
            return StepNotFound(external_step_id)
        await self.session.execute(
            update(inspections)
            .where(inspections.c.id == step_id)
            .values(**self._stamped(inspections, status.value, status.is_terminal, status == StepStatus.IN_PROGRESS))
        )
        return Found(step_id)

    @staticmethod
    def _stamped(table, status: str, terminal: bool, started: bool) -> Dict[str, Any]:
        now = _now()
        values: Dict[str, Any] = {"status": status}
        if started:
            values["started_at"] = func.coalesce(table.c.started_at, now)
        if terminal:
            values["ended_at"] = now
        return values

    # -------------------------
    # Mission definitions and skip exceptions
    # -------------------------
    async def _skips_for(self, definition_ids: List[str]) -> Dict[str, List[SkipException]]:
        skips: Dict[str, List[SkipException]] = {d: [] for d in definition_ids}
        if not definition_ids:
            return skips
        res = await self.session.execute(
            select(skip_exceptions).where(skip_exceptions.c.mission_definition_id.in_(definition_ids))
        )
        for row in res.mappings().all():
            skips[row["mission_definition_id"]].append(
                SkipException(skip_date=row["skip_date"], time_of_day=row["time_of_day"])
            )
        return skips

    async def definition_by_id(self, definition_id: str) -> Lookup[MissionDefinition]:
        res = await self.session.execute(
            select(mission_definitions).where(mission_definitions.c.id == definition_id)
        )
        row = res.mappings().first()
        if not row:
            return DefinitionNotFound(definition_id)
        skips = await self._skips_for([definition_id])
        return Found(_definition_from_row(row, skips[definition_id]))

    async def auto_scheduled_definitions(self, installation_code: Optional[str]) -> List[MissionDefinition]:
        res = await self.session.execute(
            select(mission_definitions).where(
                mission_definitions.c.deprecated == False,  # noqa: E712
                mission_definitions.c.auto_schedule.is_not(None),
                mission_definitions.c.installation_code == installation_code,
            )
        )
        rows = res.mappings().all()
        skips = await self._skips_for([r["id"] for r in rows])
        definitions = [_definition_from_row(r, skips[r["id"]]) for r in rows]
        return [d for d in definitions if d.auto_schedule is not None]

    async def add_mission_definition(self, definition: MissionDefinition) -> MissionDefinition:
        values = definition.model_dump(mode="json", exclude={"skips"})
        await self.session.execute(insert(mission_definitions).values(**values))
        for skip in definition.skips:
            await self.add_skip(definition.id, skip)
        return definition

    async def set_last_run(self, definition_id: str, run_id: str, successful: bool) -> Lookup[str]:
        values: Dict[str, Any] = {"last_run_id": run_id}
        if successful:
            values["last_successful_run_id"] = run_id
        res = await self.session.execute(
            update(mission_definitions).where(mission_definitions.c.id == definition_id).values(**values)
        )
        if res.rowcount == 0:
            return DefinitionNotFound(definition_id)
        return Found(definition_id)

    async def add_skip(self, definition_id: str, skip: SkipException) -> bool:
        res = await self.session.execute(
            select(skip_exceptions.c.id).where(
                skip_exceptions.c.mission_definition_id == definition_id,
                skip_exceptions.c.skip_date == skip.skip_date,
                skip_exceptions.c.time_of_day == skip.time_of_day,
            )
        )
        if res.first():
            return False
        await self.session.execute(
            insert(skip_exceptions).values(
                mission_definition_id=definition_id,
                skip_date=skip.skip_date,
                time_of_day=skip.time_of_day,
            )
        )
        return True

    async def purge_skips_before(self, day: date) -> int:
        res = await self.session.execute(delete(skip_exceptions).where(skip_exceptions.c.skip_date < day))
        return res.rowcount

    # -------------------------
    # Dispatch markers
    # -------------------------
    async def occurrence_claimed(self, definition_id: str, occurrence: str) -> bool:
        res = await self.session.execute(
            select(scheduled_dispatches.c.id).where(
                scheduled_dispatches.c.mission_definition_id == definition_id,
                scheduled_dispatches.c.occurrence == occurrence,
            )
        )
        return res.first() is not None

    async def claim_occurrence(self, definition_id: str, occurrence: str, robot_id: str) -> bool:
        """Insert the dispatch marker and commit; False if the occurrence was already claimed."""
        try:
            await self.session.execute(
                insert(scheduled_dispatches).values(
                    mission_definition_id=definition_id,
                    occurrence=occurrence,
                    robot_id=robot_id,
                    dispatched_at=_now(),
                )
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    async def release_occurrence(self, definition_id: str, occurrence: str) -> None:
        await self.session.execute(
            delete(scheduled_dispatches).where(
                scheduled_dispatches.c.mission_definition_id == definition_id,
                scheduled_dispatches.c.occurrence == occurrence,
            )
        )

    # -------------------------
    # Task duration estimates
    # -------------------------
    async def recent_task_durations(self, robot_model: str, limit: int) -> List[float]:
        res = await self.session.execute(
            select(mission_tasks.c.started_at, mission_tasks.c.ended_at)
            .select_from(
                mission_tasks.join(mission_runs, mission_tasks.c.mission_run_id == mission_runs.c.id)
                .join(robots, mission_runs.c.robot_id == robots.c.id)
            )
            .where(
                robots.c.model == robot_model,
                mission_tasks.c.task_type == TaskType.INSPECTION.value,
                mission_tasks.c.status == TaskStatus.SUCCESSFUL.value,
                mission_tasks.c.started_at.is_not(None),
                mission_tasks.c.ended_at.is_not(None),
            )
            .order_by(mission_tasks.c.ended_at.desc())
            .limit(limit)
        )
        return [(r.ended_at - r.started_at).total_seconds() for r in res.all()]

    async def upsert_task_duration(self, robot_model: str, average_seconds: float, sample_count: int) -> None:
        values = {"average_seconds": average_seconds, "sample_count": sample_count, "updated_at": _now()}
        res = await self.session.execute(
            update(task_durations).where(task_durations.c.robot_model == robot_model).values(**values)
        )
        if res.rowcount == 0:
            await self.session.execute(insert(task_durations).values(robot_model=robot_model, **values))

    async def task_duration(self, robot_model: str) -> Optional[float]:
        res = await self.session.execute(
            select(task_durations.c.average_seconds).where(task_durations.c.robot_model == robot_model)
        )
        return res.scalars().first()
