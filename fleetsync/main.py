"""
FleetSync Service

Reconciles robot agent telemetry against the fleet and mission model and
dispatches auto-scheduled missions.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import time
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from . import __version__
from .config import get_settings
from .db import create_all, create_engine, create_session_factory
from .dispatcher import EventDispatcher
from .exceptions import InvalidArgument
from .handlers import TelemetryHandlers
from .logging_config import configure_logging
from .metrics import instrument_app, metrics_endpoint
from .mqtt_client import MQTTClient, MqttMissionDispatcher, subscribe_telemetry
from .notifications import WebSocketManager
from .outcome import NotFound
from .scheduling import AutoScheduleEngine
from .task_durations import TaskDurationEstimator

logger = structlog.get_logger(__name__)

# Global services
engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker] = None
mqtt_client: Optional[MQTTClient] = None
websocket_manager: Optional[WebSocketManager] = None
event_dispatcher: Optional[EventDispatcher] = None
scheduler: Optional[AutoScheduleEngine] = None
durations: Optional[TaskDurationEstimator] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    global engine, SessionLocal, mqtt_client, websocket_manager, event_dispatcher, scheduler, durations

    settings = get_settings()
    configure_logging(settings.service_name, settings.log_level)
    logger.info("Starting FleetSync service", test_mode=settings.test_mode)

    database_url = "sqlite+aiosqlite://" if settings.test_mode else settings.database_url
    engine = create_engine(database_url, echo=settings.debug)
    SessionLocal = create_session_factory(engine)
    if settings.test_mode:
        await create_all(engine)

    websocket_manager = WebSocketManager(settings.websocket_max_connections)
    durations = TaskDurationEstimator(SessionLocal, settings.task_duration_sample_size)

    mqtt_client = MQTTClient(
        broker=settings.mqtt_broker,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        keepalive=settings.mqtt_keepalive,
        client_id=settings.service_name,
    )
    scheduler = AutoScheduleEngine(
        SessionLocal,
        MqttMissionDispatcher(mqtt_client, settings.dispatch_topic),
        timezone_name=settings.schedule_timezone,
        due_grace_minutes=settings.due_grace_minutes,
    )

    event_dispatcher = EventDispatcher(SessionLocal, settings.channel_capacity, settings.workers_per_channel)
    TelemetryHandlers(
        scheduler,
        notifier=websocket_manager,
        durations=durations,
        step_retries=settings.completion_step_retries,
        step_retry_delay=settings.completion_step_retry_delay,
    ).register_all(event_dispatcher)
    await event_dispatcher.start()

    scheduler_task = None
    if not settings.test_mode:
        await mqtt_client.connect()
        await subscribe_telemetry(mqtt_client, event_dispatcher, settings.mqtt_topic_prefix)
        logger.info("Subscribed to agent telemetry", prefix=settings.mqtt_topic_prefix)
        scheduler_task = asyncio.create_task(scheduler.run_forever(settings.scheduler_tick_seconds))

    yield

    # Cleanup
    if scheduler_task:
        scheduler.stop()
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
    if mqtt_client and mqtt_client.connected:
        await mqtt_client.disconnect()
    await event_dispatcher.stop()
    await durations.wait_idle()
    if engine:
        await engine.dispose()
    logger.info("Shutting down FleetSync service")


app = FastAPI(
    title="FleetSync",
    description="Robot telemetry reconciliation and mission auto-scheduling",
    version=__version__,
    lifespan=lifespan,
)
instrument_app(app, service_name="fleetsync", version=__version__)
app.add_route("/metrics", metrics_endpoint)


class SkipAutoMissionRequest(BaseModel):
    time_of_day: time


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "fleetsync"}


@app.get("/readyz")
async def readyz():
    """Readiness probe: checks DB connectivity and the worker pool."""
    try:
        assert SessionLocal is not None
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
        assert event_dispatcher is not None and event_dispatcher.running
        return {"status": "ready"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Not ready: {e}")


@app.get("/livez")
async def livez():
    return {"status": "alive"}


@app.put("/mission-definitions/{definition_id}/skip-auto-mission", status_code=204)
async def skip_auto_mission(definition_id: str, req: SkipAutoMissionRequest):
    """Skip the next auto-scheduled run of a definition at the given time of day."""
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    try:
        result = await scheduler.register_skip(definition_id, req.time_of_day)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=str(result))


@app.get("/mission-definitions/{definition_id}/next-run")
async def next_run(definition_id: str):
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    result = await scheduler.next_run(definition_id)
    if isinstance(result, NotFound):
        raise HTTPException(status_code=404, detail=str(result))
    return {"mission_definition_id": definition_id, "next_run": result.value}


# WebSocket endpoint for live fleet updates
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, installation: Optional[str] = None):
    global websocket_manager
    if websocket_manager is None:
        websocket_manager = WebSocketManager()
    if not await websocket_manager.connect(websocket, installation):
        return
    try:
        # Clients only listen; incoming messages are ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        websocket_manager.disconnect(websocket)


def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run("fleetsync.main:app", host="0.0.0.0", port=8080, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
