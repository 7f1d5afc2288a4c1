"""MQTT transport for agent telemetry and mission dispatch instructions."""

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import paho.mqtt.client as mqtt
import structlog
from paho.mqtt.client import MQTTMessage
from pydantic import ValidationError

from .dispatcher import EventDispatcher
from .events import EventType, parse_event
from .models import MissionDefinition, Robot

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class MQTTClient:
    """Async MQTT client wrapper.

    paho runs its network loop on its own thread; message handlers are
    coroutines scheduled back onto the event loop that called ``connect``.
    """

    def __init__(
        self,
        broker: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        client_id: str = "",
    ):
        self.broker = broker
        self.port = port
        self.keepalive = keepalive

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username:
            self.client.username_pw_set(username, password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_publish = self._on_publish

        self.connected = False
        self.subscriptions: Dict[str, MessageHandler] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("Failed to connect to MQTT broker", broker=self.broker, reason=str(reason_code))
            return
        self.connected = True
        logger.info("Connected to MQTT broker", broker=self.broker, port=self.port)
        # Broker sessions are not persistent; restore subscriptions after a reconnect
        for topic in self.subscriptions:
            client.subscribe(topic)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self.connected = False
        logger.info("Disconnected from MQTT broker", reason=str(reason_code))

    def _on_message(self, client, userdata, msg: MQTTMessage):
        topic = msg.topic
        for pattern, handler in self.subscriptions.items():
            if not mqtt.topic_matches_sub(pattern, topic):
                continue
            try:
                data = json.loads(msg.payload.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.error("Invalid JSON in MQTT message", topic=topic)
                return
            if not isinstance(data, dict):
                logger.error("MQTT message is not a JSON object", topic=topic)
                return
            if self._loop is None or self._loop.is_closed():
                logger.warning("Dropping MQTT message, no event loop", topic=topic)
                return
            asyncio.run_coroutine_threadsafe(self._handle_message(handler, topic, data), self._loop)
            return

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        logger.debug("Published MQTT message", mid=mid)

    async def _handle_message(self, handler: MessageHandler, topic: str, data: Dict[str, Any]):
        try:
            await handler(topic, data)
        except Exception:
            logger.exception("Error in MQTT message handler", topic=topic)

    async def connect(self, timeout: float = 10.0):
        """Connect to the broker and wait for the CONNACK."""
        self._loop = asyncio.get_running_loop()
        try:
            self.client.connect(self.broker, self.port, self.keepalive)
            self.client.loop_start()

            remaining = timeout
            while not self.connected and remaining > 0:
                await asyncio.sleep(0.1)
                remaining -= 0.1

            if not self.connected:
                raise ConnectionError("Failed to connect to MQTT broker")
        except Exception as e:
            logger.error("Error connecting to MQTT broker", broker=self.broker, error=str(e))
            raise

    async def disconnect(self):
        try:
            self.client.disconnect()
            self.client.loop_stop()
            self.connected = False
            logger.info("Disconnected from MQTT broker")
        except Exception as e:
            logger.error("Error disconnecting from MQTT broker", error=str(e))

    async def publish(self, topic: str, message: str, qos: int = 1, retain: bool = False):
        if not self.connected:
            raise ConnectionError("Not connected to MQTT broker")
        result = self.client.publish(topic, message, qos=qos, retain=retain)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionError(f"Failed to publish message: {mqtt.error_string(result.rc)}")
        logger.debug("Published to MQTT", topic=topic)

    async def subscribe(self, topic: str, handler: MessageHandler):
        if not self.connected:
            raise ConnectionError("Not connected to MQTT broker")
        result, _ = self.client.subscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionError(f"Failed to subscribe to topic {topic}: {mqtt.error_string(result)}")
        self.subscriptions[topic] = handler
        logger.info("Subscribed to topic", topic=topic)


def telemetry_topic(prefix: str, event_type: EventType) -> str:
    """Subscription pattern for one event kind, e.g. ``fleet/+/status``."""
    return f"{prefix}/+/{event_type.value}"


def make_telemetry_handler(dispatcher: EventDispatcher) -> MessageHandler:
    """Decode ``<prefix>/<agent_id>/<kind>`` messages into events and queue them."""

    async def handle(topic: str, data: Dict[str, Any]) -> None:
        parts = topic.split("/")
        if len(parts) < 3:
            logger.warning("Unexpected telemetry topic", topic=topic)
            return
        agent_id, kind = parts[-2], parts[-1]
        try:
            event_type = EventType(kind)
        except ValueError:
            logger.warning("Unknown telemetry kind", topic=topic)
            return
        data.setdefault("agent_id", agent_id)
        try:
            event = parse_event(event_type, data)
        except ValidationError as e:
            logger.error("Malformed telemetry payload", topic=topic, errors=e.error_count())
            return
        # Runs on the loop per paho message; never wait on a full channel here
        dispatcher.submit_nowait(event)

    return handle


async def subscribe_telemetry(client: MQTTClient, dispatcher: EventDispatcher, prefix: str) -> None:
    handler = make_telemetry_handler(dispatcher)
    for event_type in EventType:
        await client.subscribe(telemetry_topic(prefix, event_type), handler)


class MqttMissionDispatcher:
    """Hands "start this mission now" instructions to the mission launcher over MQTT."""

    def __init__(self, client: MQTTClient, topic: str):
        self.client = client
        self.topic = topic

    async def start_mission(self, definition: MissionDefinition, robot: Robot, occurrence: datetime) -> None:
        message = {
            "mission_definition_id": definition.id,
            "mission_name": definition.name,
            "robot_id": robot.id,
            "agent_id": robot.agent_id,
            "installation_code": robot.installation_code,
            "occurrence": occurrence.isoformat(),
        }
        await self.client.publish(self.topic, json.dumps(message))
