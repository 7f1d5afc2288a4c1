"""Domain models for the FleetSync reconciliation service."""

from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import InvalidArgument, UnrecognizedStatus


def _normalize(token: str) -> str:
    return token.replace("_", "").replace("-", "").replace(" ", "").lower()


class _TokenEnum(str, Enum):
    """String enum that also accepts snake_case / case-insensitive spellings."""

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            wanted = _normalize(value)
            for member in cls:
                if _normalize(member.value) == wanted:
                    return member
        return None


def parse_token(enum_cls, raw: str, kind: str = "status"):
    """Map an agent token onto ``enum_cls`` or raise ``UnrecognizedStatus``."""
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError:
        raise UnrecognizedStatus(str(raw), kind) from None


class RobotStatus(_TokenEnum):
    """Robot operational status as reported by the agent."""
    AVAILABLE = "Available"
    BUSY = "Busy"
    OFFLINE = "Offline"
    BLOCKED = "Blocked"
    BLOCKED_PROTECTIVE_STOP = "BlockedProtectiveStop"
    DOCKED = "Docked"
    PAUSED = "Paused"
    HOME = "Home"
    RECHARGING = "Recharging"
    UNKNOWN = "Unknown"


class BatteryState(_TokenEnum):
    NORMAL = "Normal"
    CHARGING = "Charging"


class RobotCapability(_TokenEnum):
    """Capabilities an agent can declare for its robot."""
    MOVE_ARM = "move_arm"
    RETURN_TO_HOME = "return_to_home"
    LOCALIZE = "localize"
    AUTO_LOCALIZE = "auto_localize"
    TAKE_IMAGE = "take_image"
    TAKE_VIDEO = "take_video"
    TAKE_THERMAL_IMAGE = "take_thermal_image"
    TAKE_THERMAL_VIDEO = "take_thermal_video"
    TAKE_CO2_MEASUREMENT = "take_co2_measurement"
    RECORD_AUDIO = "record_audio"
    DOCKING = "docking"


class MissionStatus(_TokenEnum):
    """Mission run status values."""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PAUSED = "Paused"
    SUCCESSFUL = "Successful"
    PARTIALLY_SUCCESSFUL = "PartiallySuccessful"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_MISSION_STATUSES

    @property
    def is_successful(self) -> bool:
        return self is MissionStatus.SUCCESSFUL


_TERMINAL_MISSION_STATUSES = frozenset({
    MissionStatus.SUCCESSFUL,
    MissionStatus.PARTIALLY_SUCCESSFUL,
    MissionStatus.FAILED,
    MissionStatus.CANCELLED,
    MissionStatus.ABORTED,
})


class TaskStatus(_TokenEnum):
    """Task status values."""
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    PAUSED = "Paused"
    SUCCESSFUL = "Successful"
    PARTIALLY_SUCCESSFUL = "PartiallySuccessful"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskStatus.SUCCESSFUL,
            TaskStatus.PARTIALLY_SUCCESSFUL,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        )


class StepStatus(_TokenEnum):
    """Inspection step status values."""
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCESSFUL, StepStatus.FAILED, StepStatus.CANCELLED)


class StepType(_TokenEnum):
    DRIVE_TO_POSE = "drive_to_pose"
    LOCALIZE = "localize"
    MOVE_ARM = "move_arm"
    RETURN_TO_HOME = "return_to_home"
    TAKE_IMAGE = "take_image"
    TAKE_VIDEO = "take_video"
    TAKE_THERMAL_IMAGE = "take_thermal_image"
    TAKE_THERMAL_VIDEO = "take_thermal_video"
    TAKE_CO2_MEASUREMENT = "take_co2_measurement"
    RECORD_AUDIO = "record_audio"


# Steps with no inspection value never reach the tracker
IGNORED_STEP_TYPES = frozenset({
    StepType.DRIVE_TO_POSE,
    StepType.LOCALIZE,
    StepType.MOVE_ARM,
    StepType.RETURN_TO_HOME,
})


class TaskType(_TokenEnum):
    INSPECTION = "Inspection"
    RETURN_HOME = "ReturnHome"
    LOCALIZATION = "Localization"
    MOVE_ARM = "MoveArm"


class VideoStream(BaseModel, frozen=True):
    """A video stream declared by a robot."""
    name: str
    url: str
    type: str


class Installation(BaseModel):
    id: str
    installation_code: str
    name: str

    def __str__(self) -> str:
        return self.installation_code


class Robot(BaseModel):
    """Robot entity as persisted."""
    id: str
    agent_id: str
    name: str
    model: Optional[str] = None
    serial_number: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    installation_code: Optional[str] = None
    current_area_id: Optional[str] = None
    capabilities: Optional[List[RobotCapability]] = None
    video_streams: List[VideoStream] = Field(default_factory=list)
    status: RobotStatus = RobotStatus.OFFLINE
    battery_level: Optional[float] = None
    battery_state: Optional[BatteryState] = None
    pressure_level: Optional[float] = None
    pose: Optional[Dict[str, Any]] = None
    current_mission_run_id: Optional[str] = None
    deprecated: bool = False

    @property
    def is_free(self) -> bool:
        return (
            self.status == RobotStatus.AVAILABLE
            and self.current_mission_run_id is None
            and not self.deprecated
        )


class Weekday(_TokenEnum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @property
    def iso_index(self) -> int:
        """0 for Monday, matching ``date.weekday()``."""
        return list(Weekday).index(self)


class AutoScheduleFrequency(BaseModel):
    """Recurrence rule: every listed weekday at every listed time of day."""
    time_of_day: List[time] = Field(default_factory=list)
    days_of_week: List[Weekday] = Field(default_factory=list)

    @field_validator("time_of_day")
    @classmethod
    def _whole_minutes(cls, value: List[time]) -> List[time]:
        return sorted({t.replace(second=0, microsecond=0, tzinfo=None) for t in value})

    def validate_frequency(self) -> None:
        if not self.time_of_day:
            raise InvalidArgument("Auto schedule frequency needs at least one time of day")
        if not self.days_of_week:
            raise InvalidArgument("Auto schedule frequency needs at least one day of the week")

    def runs_on(self, day: date) -> bool:
        return any(d.iso_index == day.weekday() for d in self.days_of_week)


class SkipException(BaseModel, frozen=True):
    """Suppresses the occurrence of a definition on one date at one time of day."""
    skip_date: date
    time_of_day: time


class MissionDefinition(BaseModel):
    id: str
    name: str
    comment: Optional[str] = None
    inspection_frequency_days: Optional[float] = None
    installation_code: Optional[str] = None
    auto_schedule: Optional[AutoScheduleFrequency] = None
    skips: List[SkipException] = Field(default_factory=list)
    last_run_id: Optional[str] = None
    last_successful_run_id: Optional[str] = None
    deprecated: bool = False


class Inspection(BaseModel):
    id: str
    external_step_id: str
    step_type: Optional[StepType] = None
    status: StepStatus = StepStatus.NOT_STARTED


class MissionTask(BaseModel):
    id: str
    external_task_id: str
    task_order: int = 0
    task_type: TaskType = TaskType.INSPECTION
    status: TaskStatus = TaskStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    inspections: List[Inspection] = Field(default_factory=list)


class MissionRun(BaseModel):
    id: str
    external_mission_id: str
    name: Optional[str] = None
    mission_definition_id: Optional[str] = None
    robot_id: Optional[str] = None
    installation_code: Optional[str] = None
    area_id: Optional[str] = None
    status: MissionStatus = MissionStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    tasks: List[MissionTask] = Field(default_factory=list)

    @property
    def is_localization_run(self) -> bool:
        return bool(self.tasks) and all(t.task_type == TaskType.LOCALIZATION for t in self.tasks)
