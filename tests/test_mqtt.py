import json
from datetime import datetime, timezone

import pytest

from fleetsync.dispatcher import EventDispatcher
from fleetsync.events import EventType, RobotInfoEvent, RobotStatusEvent, StepStatusEvent
from fleetsync.models import MissionDefinition, Robot, RobotCapability, RobotStatus
from fleetsync.mqtt_client import MqttMissionDispatcher, make_telemetry_handler, telemetry_topic


class _StubDispatcher:
    def __init__(self):
        self.submitted = []

    def submit_nowait(self, event):
        self.submitted.append(event)
        return True


class _StubMQTT:
    def __init__(self):
        self.published = []

    async def publish(self, topic: str, message: str, qos: int = 1, retain: bool = False):
        self.published.append((topic, json.loads(message)))


def test_topic_pattern_per_event_type():
    assert telemetry_topic("fleet", EventType.ROBOT_STATUS) == "fleet/+/status"
    assert telemetry_topic("fleet", EventType.CLOUD_HEALTH) == "fleet/+/cloud_health"


@pytest.mark.asyncio
async def test_status_message_becomes_event():
    dispatcher = _StubDispatcher()
    handle = make_telemetry_handler(dispatcher)

    await handle("fleet/R7/status", {"status": "available", "robot_name": "Inspector 7"})

    event = dispatcher.submitted[0]
    assert isinstance(event, RobotStatusEvent)
    assert event.agent_id == "R7"
    assert event.status == RobotStatus.AVAILABLE


@pytest.mark.asyncio
async def test_payload_agent_id_wins_over_topic():
    dispatcher = _StubDispatcher()
    handle = make_telemetry_handler(dispatcher)

    await handle(
        "fleet/R7/robot_info",
        {"agent_id": "isar-7", "current_installation": "SITE-A", "capabilities": ["take_image", "return_to_home"]},
    )

    event = dispatcher.submitted[0]
    assert isinstance(event, RobotInfoEvent)
    assert event.agent_id == "isar-7"
    assert event.capabilities == [RobotCapability.TAKE_IMAGE, RobotCapability.RETURN_TO_HOME]


@pytest.mark.asyncio
async def test_step_message_keeps_raw_tokens_for_the_tracker():
    dispatcher = _StubDispatcher()
    await make_telemetry_handler(dispatcher)(
        "fleet/R7/step",
        {"mission_id": "M1", "task_id": "T1", "step_id": "S1", "step_type": "drive_to_pose", "status": "in_progress"},
    )
    event = dispatcher.submitted[0]
    assert isinstance(event, StepStatusEvent)
    assert event.step_type == "drive_to_pose"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "topic,payload",
    [
        ("fleet/R7/status", {"status": "levitating"}),
        ("fleet/R7/battery", {"battery_level": 140}),
        ("fleet/R7/robot_info", {"host": "10.0.0.7"}),
        ("fleet/R7/teleport", {"x": 1}),
        ("status", {"status": "available"}),
    ],
)
async def test_malformed_messages_are_dropped(topic, payload):
    dispatcher = _StubDispatcher()
    await make_telemetry_handler(dispatcher)(topic, payload)
    assert dispatcher.submitted == []


@pytest.mark.asyncio
async def test_mission_dispatcher_publishes_start_instruction():
    mqtt = _StubMQTT()
    dispatcher = MqttMissionDispatcher(mqtt, "missions/dispatch")
    definition = MissionDefinition(id="def-1", name="Weekly compressor check")
    robot = Robot(id="rob-1", agent_id="R7", name="Inspector 7", installation_code="SITE-A")

    await dispatcher.start_mission(definition, robot, datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc))

    topic, message = mqtt.published[0]
    assert topic == "missions/dispatch"
    assert message == {
        "mission_definition_id": "def-1",
        "mission_name": "Weekly compressor check",
        "robot_id": "rob-1",
        "agent_id": "R7",
        "installation_code": "SITE-A",
        "occurrence": "2024-01-01T08:00:00+00:00",
    }


@pytest.mark.asyncio
async def test_full_channel_drops_broker_messages(session_factory):
    dispatcher = EventDispatcher(session_factory, channel_capacity=1)

    async def never_runs(event, session):
        raise AssertionError("workers are not started")

    dispatcher.register(EventType.ROBOT_STATUS, never_runs)
    handle = make_telemetry_handler(dispatcher)

    for index in range(50):
        await handle(f"fleet/R{index}/status", {"status": "available"})

    assert dispatcher.backlog(EventType.ROBOT_STATUS) == 1
