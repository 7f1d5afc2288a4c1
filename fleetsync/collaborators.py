"""Interfaces of the collaborators the reconciliation core talks to."""

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from .models import MissionDefinition, Robot


class SchedulingSignals(Protocol):
    """Sink for the two signals consumed by the auto-scheduling engine."""

    async def on_robot_available(self, robot_id: str) -> None: ...

    async def on_mission_completed(self, robot_id: str) -> None: ...


class MissionDispatcher(Protocol):
    """Creates the mission run for a definition and commands the robot."""

    async def start_mission(self, definition: MissionDefinition, robot: Robot, occurrence: datetime) -> None: ...


class Notifier(Protocol):
    """Live-update fan-out to UI clients; fire-and-forget."""

    async def publish(self, event_name: str, payload: Optional[Dict[str, Any]], installation_code: Optional[str] = None) -> None: ...
