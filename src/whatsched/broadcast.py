"""Event fan-out to connected observers.

The core publishes named events (challenge-issued, status, ready,
new-message) and never waits on the observers: publish() is
fire-and-forget, with no delivery guarantee and no backpressure signal.

WebSocketHub keeps one bounded queue per connected browser. A slow
client drops its own events once its queue is full; it never slows the
publisher or the other clients.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class Broadcaster(ABC):
    """Publish named events with a JSON-like payload to all observers."""

    @abstractmethod
    def publish(self, event: str, payload: dict[str, Any]) -> None:
        ...


class NullBroadcaster(Broadcaster):
    """Discards everything (CLI commands that touch the store offline)."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug(f"Discarding event {event}")


class WebSocketHub(Broadcaster):
    """Broadcast over FastAPI WebSockets.

    Frames are JSON objects: {"event": "<name>", "data": {...}}.

    Usage:
        hub = WebSocketHub()

        @app.websocket("/ws")
        async def ws_endpoint(ws: WebSocket):
            await hub.serve(ws)
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._queues: dict[WebSocket, asyncio.Queue] = {}

    @property
    def connection_count(self) -> int:
        return len(self._queues)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        frame = {"event": event, "data": payload}
        for ws, queue in list(self._queues.items()):
            try:
                queue.put_nowait(frame)
            except asyncio.QueueFull:
                logger.warning(f"Observer queue full, dropping {event} for one client")

    async def serve(
        self,
        ws: WebSocket,
        initial: Iterable[tuple[str, dict[str, Any]]] = (),
    ) -> None:
        """Run one observer connection until it closes.

        Args:
            ws: The incoming WebSocket (not yet accepted)
            initial: Events sent to this observer only, before any broadcast
        """
        await ws.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        for event, payload in initial:
            queue.put_nowait({"event": event, "data": payload})
        self._queues[ws] = queue
        logger.info(f"Observer connected ({self.connection_count} total)")

        sender = asyncio.create_task(self._pump(ws, queue))
        try:
            # Client frames are ignored; reading is how a disconnect shows up
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            self._queues.pop(ws, None)
            logger.info(f"Observer disconnected ({self.connection_count} left)")

    @staticmethod
    async def _pump(ws: WebSocket, queue: asyncio.Queue) -> None:
        while True:
            frame = await queue.get()
            try:
                await ws.send_json(frame)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Send to observer failed: {e}")
                return
