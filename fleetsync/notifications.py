"""WebSocket fan-out of live fleet updates."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import WebSocket

from .collaborators import Notifier
from .models import MissionRun, Robot

logger = structlog.get_logger(__name__)


class WebSocketManager:
    """Manages WebSocket connections and implements the notifier contract over them."""

    def __init__(self, max_connections: int = 1000):
        self.max_connections = max_connections
        self.active_connections: List[WebSocket] = []
        self.connection_info: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, installation_code: Optional[str] = None) -> bool:
        """Accept a WebSocket connection, optionally scoped to one installation."""
        if len(self.active_connections) >= self.max_connections:
            await websocket.close(code=1013)
            logger.warning("Rejected WebSocket connection, limit reached", limit=self.max_connections)
            return False
        await websocket.accept()
        self.active_connections.append(websocket)
        self.connection_info[websocket] = {
            "connected_at": datetime.now(timezone.utc),
            "installation_code": installation_code.lower() if installation_code else None,
        }
        logger.info("WebSocket connected", connections=len(self.active_connections))
        return True

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            self.connection_info.pop(websocket, None)
            logger.info("WebSocket disconnected", connections=len(self.active_connections))

    def _wants(self, websocket: WebSocket, installation_code: Optional[str]) -> bool:
        scope = self.connection_info.get(websocket, {}).get("installation_code")
        return scope is None or installation_code is None or scope == installation_code.lower()

    async def publish(self, event_name: str, payload: Optional[Dict[str, Any]], installation_code: Optional[str] = None) -> None:
        """Broadcast a named event to every client watching the installation."""
        message = json.dumps(
            {
                "type": event_name,
                "installation_code": installation_code,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": payload,
            },
            default=str,
        )
        targets = [ws for ws in self.active_connections.copy() if self._wants(ws, installation_code)]
        if targets:
            await asyncio.gather(*(self._send_to_connection(ws, message) for ws in targets), return_exceptions=True)

    async def _send_to_connection(self, websocket: WebSocket, message: str):
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Error sending to connection", error=str(e))
            self.disconnect(websocket)

    def get_connection_count(self) -> int:
        return len(self.active_connections)


async def notify(notifier: Optional[Notifier], event_name: str, payload: Optional[Dict[str, Any]],
                 installation_code: Optional[str] = None) -> None:
    """Publish without letting a notifier failure reach the caller."""
    if notifier is None:
        return
    try:
        await notifier.publish(event_name, payload, installation_code)
    except Exception as e:
        logger.warning("Failed to publish notification", notification=event_name, error=str(e))


def run_snapshot(run: Optional[MissionRun]) -> Optional[Dict[str, Any]]:
    return run.model_dump(mode="json") if run is not None else None


def general_failure(robot: Robot, title: str, message: str) -> Dict[str, Any]:
    return {
        "robot_id": robot.id,
        "robot_name": robot.name,
        "title": title,
        "message": message,
    }
