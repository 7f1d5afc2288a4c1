"""Routes telemetry events to their handlers.

One bounded channel per event type, drained by a fixed pool of workers. Every
event is handled in its own database session, so a slow or failing handler
only costs that one event.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .events import EventType, TelemetryEvent
from .logging_config import bind_event_context, clear_event_context
from .metrics import HandlerTimer, telemetry_events_received_total

logger = structlog.get_logger(__name__)

Handler = Callable[[TelemetryEvent, AsyncSession], Awaitable[None]]


class EventDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel_capacity: int = 1000,
        workers_per_channel: int = 4,
    ):
        self.session_factory = session_factory
        self.channel_capacity = channel_capacity
        self.workers_per_channel = workers_per_channel
        self._handlers: Dict[EventType, Handler] = {}
        self._channels: Dict[EventType, asyncio.Queue] = {}
        self._workers: List[asyncio.Task] = []

    def register(self, event_type: EventType, handler: Handler) -> None:
        self._handlers[event_type] = handler
        self._channels.setdefault(event_type, asyncio.Queue(maxsize=self.channel_capacity))

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def backlog(self, event_type: EventType) -> int:
        channel = self._channels.get(event_type)
        return channel.qsize() if channel is not None else 0

    async def submit(self, event: TelemetryEvent) -> bool:
        """Queue an event; waits while its channel is full."""
        channel = self._channels.get(event.event_type)
        if channel is None:
            logger.warning("No handler registered for event type", event_type=event.event_type.value)
            return False
        await channel.put(event)
        telemetry_events_received_total.labels(event_type=event.event_type.value).inc()
        return True

    def submit_nowait(self, event: TelemetryEvent) -> bool:
        channel = self._channels.get(event.event_type)
        if channel is None:
            logger.warning("No handler registered for event type", event_type=event.event_type.value)
            return False
        try:
            channel.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Telemetry channel full, dropping event", event_type=event.event_type.value,
                           agent_id=event.agent_id)
            return False
        telemetry_events_received_total.labels(event_type=event.event_type.value).inc()
        return True

    async def dispatch(self, event: TelemetryEvent) -> None:
        """Handle one event in its own session; never raises."""
        handler = self._handlers[event.event_type]
        bind_event_context(event_type=event.event_type.value, agent_id=event.agent_id,
                           mission_id=getattr(event, "mission_id", None))
        try:
            with HandlerTimer(event.event_type.value):
                async with self.session_factory() as session:
                    await handler(event, session)
        except Exception:
            logger.exception("Telemetry handler failed")
        finally:
            clear_event_context()

    async def _worker(self, channel: asyncio.Queue) -> None:
        while True:
            event = await channel.get()
            try:
                await self.dispatch(event)
            finally:
                channel.task_done()

    async def start(self) -> None:
        if self._workers:
            return
        for event_type, channel in self._channels.items():
            for index in range(self.workers_per_channel):
                task = asyncio.create_task(self._worker(channel), name=f"telemetry-{event_type.value}-{index}")
                self._workers.append(task)
        logger.info("Event dispatcher started", channels=len(self._channels), workers=len(self._workers))

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await asyncio.gather(*(channel.join() for channel in self._channels.values()))

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Event dispatcher stopped")
