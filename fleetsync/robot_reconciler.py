"""Applies robot status and robot info telemetry to the persisted Robot."""

import json
from dataclasses import dataclass, field
from typing import Any, List, NamedTuple, Optional, Sequence

import structlog

from .collaborators import SchedulingSignals
from .events import RobotInfoEvent
from .models import Installation, Robot, RobotCapability, RobotStatus, VideoStream
from .identity import IdentityResolver
from .outcome import NotFound
from .repository import FleetRepository, new_id

logger = structlog.get_logger(__name__)


class FieldDiff(NamedTuple):
    value: Any
    changed: bool
    description: str = ""


def _streams_json(streams: Sequence[VideoStream]) -> str:
    return json.dumps([s.model_dump() for s in streams], indent=2)


def diff_video_streams(current: Sequence[VideoStream], incoming: Sequence[VideoStream]) -> FieldDiff:
    """Streams compare as sets of (name, url, type); order and duplicates do not matter."""
    deduplicated = list(dict.fromkeys(incoming))
    if set(current) == set(deduplicated):
        return FieldDiff(list(current), False)
    return FieldDiff(
        deduplicated,
        True,
        f"VideoStreams ({_streams_json(current)} -> {_streams_json(deduplicated)})",
    )


def diff_host(current: Optional[str], incoming: str) -> FieldDiff:
    if incoming == current:
        return FieldDiff(current, False)
    return FieldDiff(incoming, True, f"Host ({current} -> {incoming})")


def diff_port(current: Optional[int], incoming: int) -> FieldDiff:
    if incoming == current:
        return FieldDiff(current, False)
    return FieldDiff(incoming, True, f"Port ({current} -> {incoming})")


def diff_installation(current_code: Optional[str], incoming: Installation) -> FieldDiff:
    if incoming.installation_code == current_code:
        return FieldDiff(current_code, False)
    return FieldDiff(
        incoming.installation_code,
        True,
        f"CurrentInstallation ({current_code} -> {incoming.installation_code})",
    )


def diff_capabilities(
    current: Optional[Sequence[RobotCapability]], incoming: Sequence[RobotCapability]
) -> FieldDiff:
    """Capabilities are an ordered sequence; a reordering is a change."""
    if current is not None and list(current) == list(incoming):
        return FieldDiff(list(current), False)
    before = None if current is None else [c.value for c in current]
    after = [c.value for c in incoming]
    return FieldDiff(list(incoming), True, f"RobotCapabilities ({before} -> {after})")


@dataclass
class InfoReconciliation:
    robot: Optional[Robot]
    created: bool = False
    changes: List[str] = field(default_factory=list)

    @property
    def written(self) -> bool:
        return self.created or bool(self.changes)


class RobotStateReconciler:
    def __init__(self, repository: FleetRepository, signals: SchedulingSignals):
        self.repository = repository
        self.signals = signals

    async def reconcile_status(self, robot: Robot, new_status: RobotStatus) -> bool:
        """Persist a status change; entering Available raises the availability signal."""
        if robot.status == new_status:
            return False
        if not await self.repository.set_robot_status(robot.id, new_status):
            # Another event already stored this status
            return False
        await self.repository.commit()
        logger.info("Updated robot status", robot_id=robot.id, robot_name=robot.name,
                    previous=robot.status.value, status=new_status.value)
        robot.status = new_status

        if new_status == RobotStatus.AVAILABLE:
            await self.signals.on_robot_available(robot.id)
        return True

    async def reconcile_info(self, robot: Optional[Robot], info: RobotInfoEvent) -> InfoReconciliation:
        installation_result = await IdentityResolver(self.repository).installation_named(info.current_installation)
        if isinstance(installation_result, NotFound):
            if robot is None:
                logger.error("Could not create new robot due to missing installation",
                             agent_id=info.agent_id, installation=info.current_installation)
            else:
                logger.error("Robot info references unknown installation, robot not updated",
                             robot_id=robot.id, installation=info.current_installation)
            return InfoReconciliation(robot=robot)
        installation = installation_result.value

        if robot is None:
            return await self._create_robot(info, installation)

        diffs: dict = {}
        if info.video_streams is not None:
            diffs["video_streams"] = diff_video_streams(robot.video_streams, info.video_streams)
        if info.host is not None:
            diffs["host"] = diff_host(robot.host, info.host)
        diffs["port"] = diff_port(robot.port, info.port)
        diffs["installation_code"] = diff_installation(robot.installation_code, installation)
        if info.capabilities is not None:
            diffs["capabilities"] = diff_capabilities(robot.capabilities, info.capabilities)

        changed = {name: d for name, d in diffs.items() if d.changed}
        if not changed:
            return InfoReconciliation(robot=robot)

        values = {name: d.value for name, d in changed.items()}
        updated = robot.model_copy(update=values)
        column_values = updated.model_dump(mode="json", include=set(values))
        if not await self.repository.update_robot(robot.id, column_values):
            logger.warning("Robot disappeared before info update", robot_id=robot.id)
            return InfoReconciliation(robot=None)
        await self.repository.commit()

        descriptions = [d.description for d in changed.values()]
        logger.info("Updated robot", robot_id=robot.id, robot_name=robot.name, updates=descriptions)
        return InfoReconciliation(robot=updated, changes=descriptions)

    async def _create_robot(self, info: RobotInfoEvent, installation: Installation) -> InfoReconciliation:
        logger.info("Received message from new agent, adding robot",
                    agent_id=info.agent_id, robot_name=info.robot_name)
        robot = Robot(
            id=new_id(),
            agent_id=info.agent_id,
            name=info.robot_name or info.agent_id,
            model=info.robot_model,
            serial_number=info.serial_number,
            host=info.host,
            port=info.port,
            installation_code=installation.installation_code,
            capabilities=info.capabilities,
            video_streams=diff_video_streams([], info.video_streams or []).value,
            status=RobotStatus.AVAILABLE,
        )
        await self.repository.create_robot(robot)
        await self.repository.commit()
        logger.info("Added robot", robot_id=robot.id, agent_id=robot.agent_id, robot_name=robot.name)
        return InfoReconciliation(robot=robot, created=True)
