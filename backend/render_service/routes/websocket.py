"""WebSocket endpoint for live job events."""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from render_service.services.websocket_manager import websocket_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, job_id: Optional[str] = Query(None)):
    """
    Push job events to the client.

    Events:
    - job_status: queued -> processing -> done/error
    - job_heartbeat: periodic liveness of a processing job
    - queue_update: queue size and in-flight count

    Pass ?job_id= to receive events of a single job only.
    """
    await websocket_manager.connect(websocket, job_id)

    try:
        await websocket_manager.send_to(websocket, {
            "type": "system",
            "message": "Connected to render service",
        })

        while True:
            try:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket_manager.send_to(websocket, {"type": "pong"})
            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected normally")
                break
            except Exception as e:
                logger.error(f"Error receiving WebSocket message: {e}")
                break
    finally:
        websocket_manager.disconnect(websocket)
