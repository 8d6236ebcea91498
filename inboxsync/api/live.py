"""
Live-subscriber channel.

Connected WebSocket clients receive every finalized email as a
``newEmail`` event. Delivery is fire-and-forget and at-most-once: there is
no buffering and no backpressure, and a client that is offline when an
event fires never sees it. A send that fails drops that subscriber.
"""

import asyncio
import logging
from typing import Protocol

from fastapi import WebSocket

from inboxsync.agent.schemas import EmailRecord

logger = logging.getLogger(__name__)

NEW_EMAIL_EVENT = "newEmail"


class Publisher(Protocol):
    def broadcast(self, event: str, record: EmailRecord) -> None: ...


class LiveBroadcaster:
    """Fans events out to the currently connected WebSocket clients."""

    def __init__(self):
        self._subscribers: set[WebSocket] = set()
        self._sends: set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscribers.add(websocket)
        logger.info(
            "live.subscriber_connected",
            extra={"action": "live.subscriber_connected", "subscribers": len(self._subscribers)},
        )

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._subscribers:
            self._subscribers.discard(websocket)
            logger.info(
                "live.subscriber_disconnected",
                extra={
                    "action": "live.subscriber_disconnected",
                    "subscribers": len(self._subscribers),
                },
            )

    def broadcast(self, event: str, record: EmailRecord) -> None:
        """Schedule one send per subscriber and return immediately."""
        if not self._subscribers:
            return
        message = {"event": event, "data": record.to_document()}
        for websocket in list(self._subscribers):
            task = asyncio.create_task(self._send(websocket, message))
            self._sends.add(task)
            task.add_done_callback(self._sends.discard)

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.debug(
                "live.send_failed",
                extra={"action": "live.send_failed", "error": str(e)},
            )
            self.disconnect(websocket)
