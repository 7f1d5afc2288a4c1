"""Telemetry events published by robot-side agents."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import BatteryState, RobotCapability, RobotStatus, VideoStream


class EventType(str, Enum):
    """Telemetry event kinds; the value is also the MQTT topic suffix."""
    ROBOT_STATUS = "status"
    ROBOT_INFO = "robot_info"
    MISSION_STATUS = "mission"
    TASK_STATUS = "task"
    STEP_STATUS = "step"
    BATTERY = "battery"
    PRESSURE = "pressure"
    POSE = "pose"
    CLOUD_HEALTH = "cloud_health"


class TelemetryEvent(BaseModel):
    """Fields common to every agent message."""
    event_type: EventType
    agent_id: str
    robot_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RobotStatusEvent(TelemetryEvent):
    event_type: EventType = EventType.ROBOT_STATUS
    status: RobotStatus


class RobotInfoEvent(TelemetryEvent):
    event_type: EventType = EventType.ROBOT_INFO
    robot_model: Optional[str] = None
    serial_number: Optional[str] = None
    current_installation: str
    video_streams: Optional[List[VideoStream]] = None
    host: Optional[str] = None
    port: int = 0
    capabilities: Optional[List[RobotCapability]] = None


class MissionStatusEvent(TelemetryEvent):
    event_type: EventType = EventType.MISSION_STATUS
    mission_id: str
    status: str


class TaskStatusEvent(TelemetryEvent):
    event_type: EventType = EventType.TASK_STATUS
    mission_id: str
    task_id: str
    status: str
    task_type: Optional[str] = None


class StepStatusEvent(TelemetryEvent):
    event_type: EventType = EventType.STEP_STATUS
    mission_id: str
    task_id: str
    step_id: str
    step_type: str
    status: str


class BatteryEvent(TelemetryEvent):
    event_type: EventType = EventType.BATTERY
    battery_level: float = Field(..., ge=0, le=100)
    battery_state: Optional[BatteryState] = None


class PressureEvent(TelemetryEvent):
    event_type: EventType = EventType.PRESSURE
    pressure_level: float


class Position(BaseModel):
    x: float
    y: float
    z: float = 0.0


class Orientation(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0


class Pose(BaseModel):
    position: Position
    orientation: Orientation = Field(default_factory=Orientation)
    frame_name: str = "asset"


class PoseEvent(TelemetryEvent):
    event_type: EventType = EventType.POSE
    pose: Pose


class CloudHealthEvent(TelemetryEvent):
    event_type: EventType = EventType.CLOUD_HEALTH


EVENT_MODELS = {
    EventType.ROBOT_STATUS: RobotStatusEvent,
    EventType.ROBOT_INFO: RobotInfoEvent,
    EventType.MISSION_STATUS: MissionStatusEvent,
    EventType.TASK_STATUS: TaskStatusEvent,
    EventType.STEP_STATUS: StepStatusEvent,
    EventType.BATTERY: BatteryEvent,
    EventType.PRESSURE: PressureEvent,
    EventType.POSE: PoseEvent,
    EventType.CLOUD_HEALTH: CloudHealthEvent,
}


def parse_event(event_type: EventType, data: dict) -> TelemetryEvent:
    """Validate a decoded payload into the model for its event type."""
    model = EVENT_MODELS[event_type]
    return model.model_validate({**data, "event_type": event_type})
