"""WebSocket publish/subscribe for download progress keyed by process id."""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ProcessBroadcaster:
    """
    Manages WebSocket subscriptions to process ids and fans events out to them.

    Features:
    - A connection may join many process ids; a process id may have many subscribers
    - Process ids with no subscribers left are pruned automatically
    - Publishing is fire-and-forget: a failed send drops that connection only

    Frames are JSON objects of the form {"event": <name>, "data": {...}}.
    """

    def __init__(self) -> None:
        """Initialize broadcaster."""
        self._subscribers: dict[str, set[WebSocket]] = {}
        self._memberships: dict[WebSocket, set[str]] = {}

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a WebSocket connection. It has no subscriptions until it joins."""
        await websocket.accept()
        logger.info("Client connected: %s", id(websocket))

    def join(self, websocket: WebSocket, process_ids: list[str]) -> list[str]:
        """
        Subscribe a connection to process ids.

        Returns:
            Every process id the connection is now subscribed to.
        """
        memberships = self._memberships.setdefault(websocket, set())
        for process_id in process_ids:
            self._subscribers.setdefault(process_id, set()).add(websocket)
            memberships.add(process_id)
            logger.info("Client %s joined process %s", id(websocket), process_id)
        return sorted(memberships)

    def leave(self, websocket: WebSocket, process_ids: list[str]) -> None:
        """Unsubscribe a connection from process ids it belongs to."""
        memberships = self._memberships.get(websocket)
        if memberships is None:
            return

        for process_id in process_ids:
            if process_id in memberships:
                memberships.discard(process_id)
                self._drop_subscriber(process_id, websocket)
                logger.info("Client %s left process %s", id(websocket), process_id)

        if not memberships:
            del self._memberships[websocket]

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove every subscription held by a connection."""
        for process_id in self._memberships.pop(websocket, set()):
            self._drop_subscriber(process_id, websocket)
        logger.info("Client disconnected: %s", id(websocket))

    def _drop_subscriber(self, process_id: str, websocket: WebSocket) -> None:
        conns = self._subscribers.get(process_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self._subscribers[process_id]

    def joined(self, websocket: WebSocket) -> list[str]:
        """Process ids a connection is subscribed to."""
        return sorted(self._memberships.get(websocket, set()))

    def active_processes(self) -> list[str]:
        """Process ids with at least one subscriber."""
        return sorted(self._subscribers)

    def subscriber_count(self, process_id: str) -> int:
        return len(self._subscribers.get(process_id, ()))

    async def emit(self, websocket: WebSocket, event: str, data: dict[str, Any]) -> bool:
        """Send one frame to one connection."""
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug("Send to %s failed: %s", id(websocket), e)
            return False

    async def publish(self, process_id: str, event: str, data: dict[str, Any]) -> int:
        """
        Fan an event out to every subscriber of `process_id`.

        Returns:
            Number of subscribers the frame reached.
        """
        websockets = list(self._subscribers.get(process_id, set()))
        if not websockets:
            return 0

        payload = {"processId": process_id, **data}
        results = await asyncio.gather(
            *(self.emit(ws, event, payload) for ws in websockets)
        )

        for ws, ok in zip(websockets, results):
            if not ok:
                self.disconnect(ws)

        return sum(1 for ok in results if ok)

    async def send_progress(self, process_id: str, progress: int) -> int:
        return await self.publish(process_id, "progress", {"progress": progress})

    async def send_status(self, process_id: str, status: str) -> int:
        return await self.publish(process_id, "status", {"status": status})

    async def send_notify(self, process_id: str, notify: str) -> int:
        return await self.publish(process_id, "notify", {"notify": notify})

    async def send_status_with_progress(self, process_id: str, status: str, progress: int) -> int:
        return await self.publish(
            process_id, "statusWithProgress", {"status": status, "progress": progress}
        )

    async def send_bulk_updates(self, updates: list[dict[str, Any]]) -> None:
        """
        Send a combined update per process id.

        Args:
            updates: Items of {"processId", "status"?, "progress"?, "notify"?}.
        """
        for update in updates:
            process_id = update.get("processId")
            if not process_id:
                continue
            payload = {
                key: update[key]
                for key in ("status", "progress", "notify")
                if update.get(key) is not None
            }
            await self.publish(process_id, "bulkUpdate", payload)

    async def send_error(self, websocket: WebSocket, message: str) -> None:
        await self.emit(websocket, "error", {"message": message})

    async def handle_message(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        """
        Dispatch one inbound frame.

        Supported events:
        - joinProcess {processId: str | list[str]} or {processIds: list[str]}
        - leaveProcess {processIds: list[str]}
        - getJoinedProcesses {}
        """
        event = message.get("event")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            data = {}

        if event == "joinProcess":
            process_ids = _normalize_process_ids(data)
            if not process_ids:
                await self.send_error(websocket, "Invalid processId(s)")
                return
            joined = self.join(websocket, process_ids)
            await self.emit(websocket, "joinedProcesses", {"processIds": joined})

        elif event == "leaveProcess":
            process_ids = data.get("processIds")
            if not isinstance(process_ids, list):
                await self.send_error(websocket, "Invalid processIds array")
                return
            self.leave(websocket, [p for p in process_ids if isinstance(p, str)])
            await self.emit(websocket, "leftProcesses", {"processIds": process_ids})

        elif event == "getJoinedProcesses":
            await self.emit(websocket, "joinedProcesses", {"processIds": self.joined(websocket)})

        else:
            await self.send_error(websocket, f"Unknown event: {event}")

    def reporter(self, process_id: str | None) -> "ProgressReporter":
        return ProgressReporter(self, process_id)


def _normalize_process_ids(data: dict[str, Any]) -> list[str]:
    raw = data.get("processIds")
    if raw is None:
        raw = data.get("processId")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        return []
    if not all(isinstance(p, str) and p for p in raw):
        return []
    return raw


class ProgressReporter:
    """
    Publishes the events of one pipeline run to one process id.

    Progress never goes backwards within a run, even when a stage is replayed
    after a recovery.
    """

    def __init__(self, broadcaster: ProcessBroadcaster | None, process_id: str | None) -> None:
        self.broadcaster = broadcaster
        self.process_id = process_id
        self.last_progress = 0

    def _clamp(self, progress: int) -> int:
        self.last_progress = max(self.last_progress, min(100, max(0, int(progress))))
        return self.last_progress

    async def _send(self, coro_factory: Any) -> None:
        if self.broadcaster is None or not self.process_id:
            return
        try:
            await coro_factory()
        except Exception as e:
            logger.warning("Progress publish failed for %s: %s", self.process_id, e)

    async def progress(self, progress: int) -> None:
        value = self._clamp(progress)
        await self._send(lambda: self.broadcaster.send_progress(self.process_id, value))

    async def status(self, status: str) -> None:
        await self._send(lambda: self.broadcaster.send_status(self.process_id, status))

    async def status_with_progress(self, status: str, progress: int) -> None:
        value = self._clamp(progress)
        await self._send(
            lambda: self.broadcaster.send_status_with_progress(self.process_id, status, value)
        )

    async def notify(self, notify: str) -> None:
        await self._send(lambda: self.broadcaster.send_notify(self.process_id, notify))
