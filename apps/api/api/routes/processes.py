"""Process progress WebSocket."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from services.progress_broadcaster import ProcessBroadcaster

logger = logging.getLogger(__name__)

router = APIRouter()

# Global broadcaster shared with the download service
broadcaster = ProcessBroadcaster()


def get_broadcaster() -> ProcessBroadcaster:
    return broadcaster


class ActiveProcessesResponse(BaseModel):
    """Process ids with at least one subscriber."""

    process_ids: list[str]
    subscribers: dict[str, int]


@router.get("/processes/active", response_model=ActiveProcessesResponse)
async def active_processes() -> ActiveProcessesResponse:
    process_ids = broadcaster.active_processes()
    return ActiveProcessesResponse(
        process_ids=process_ids,
        subscribers={pid: broadcaster.subscriber_count(pid) for pid in process_ids},
    )


@router.websocket("/ws/process")
async def process_websocket(websocket: WebSocket) -> None:
    """
    Subscribe to download progress.

    Clients send {"event": "joinProcess", "data": {"processIds": [...]}} and receive
    progress/status/notify/statusWithProgress/bulkUpdate frames for those ids.
    """
    await broadcaster.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            if raw == "ping":
                await websocket.send_text("pong")
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await broadcaster.send_error(websocket, "Invalid JSON message")
                continue
            if not isinstance(message, dict):
                await broadcaster.send_error(websocket, "Message must be an object")
                continue
            await broadcaster.handle_message(websocket, message)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)
