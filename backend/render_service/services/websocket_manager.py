"""WebSocket connection manager for job status events."""
import logging
from typing import Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Tracks connected clients and pushes scheduler events to them.

    A client either watches every job (job_id None) or a single job; events
    without a job_id (queue updates) go to everyone.
    """

    def __init__(self):
        self.connections: Dict[WebSocket, Optional[str]] = {}

    async def connect(self, websocket: WebSocket, job_id: Optional[str] = None):
        await websocket.accept()
        self.connections[websocket] = job_id
        logger.info(f"WebSocket connected (job={job_id or '*'}). Total connections: {len(self.connections)}")

    def disconnect(self, websocket: WebSocket):
        self.connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.connections)}")

    def _wants(self, watched: Optional[str], message: dict) -> bool:
        event_job = message.get("job_id")
        return watched is None or event_job is None or event_job == watched

    async def broadcast(self, message: dict):
        """
        Send message to every interested client.

        Args:
            message: JSON-serializable event; dead sockets are dropped
        """
        if not self.connections:
            return

        dead_connections = []
        for connection, watched in list(self.connections.items()):
            if not self._wants(watched, message):
                continue
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping WebSocket after send error: {e}")
                dead_connections.append(connection)

        for connection in dead_connections:
            self.connections.pop(connection, None)

        if dead_connections:
            logger.info(f"Removed {len(dead_connections)} dead connections")

    async def send_to(self, websocket: WebSocket, message: dict):
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.debug(f"Dropping WebSocket after send error: {e}")
            self.connections.pop(websocket, None)

    def get_connection_count(self) -> int:
        return len(self.connections)


# Global WebSocket manager instance
websocket_manager = WebSocketManager()
