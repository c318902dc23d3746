from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from fastapi import WebSocket

from app.api.models import Room
from app.room_store import RoomStore
from app.streams import Subscription

logger = logging.getLogger(__name__)


@dataclass
class _Feed:
    room_id: str
    websocket: WebSocket
    queue: asyncio.Queue[Room] = field(default_factory=asyncio.Queue)
    last_version: int = 0
    subscription: Subscription | None = None
    task: asyncio.Task[None] | None = None


class RoomWebSocketHub:
    """Bridges each room's Redis snapshot channel to its WebSocket clients.

    Every socket holds its own subscription, so a commit made anywhere (an HTTP
    handler, a client continuation, another API process) reaches it as a full
    room snapshot. Snapshots older than the last one sent are dropped.
    """

    def __init__(self) -> None:
        self._feeds: dict[WebSocket, _Feed] = {}

    async def connect(self, room_id: str, websocket: WebSocket, *, store: RoomStore) -> None:
        await websocket.accept()
        loop = asyncio.get_running_loop()
        feed = _Feed(room_id=room_id, websocket=websocket)

        def _on_snapshot(room: Room) -> None:
            # Runs on the pubsub worker thread.
            loop.call_soon_threadsafe(feed.queue.put_nowait, room)

        feed.subscription = store.subscribe(room_id, _on_snapshot, threaded=True)
        feed.task = asyncio.create_task(self._forward(feed))
        self._feeds[websocket] = feed

    async def disconnect(self, websocket: WebSocket) -> None:
        feed = self._feeds.pop(websocket, None)
        if feed is None:
            return
        if feed.subscription is not None:
            await asyncio.to_thread(feed.subscription)
        if feed.task is not None:
            feed.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await feed.task

    async def _forward(self, feed: _Feed) -> None:
        while True:
            room = await feed.queue.get()
            if room.version <= feed.last_version:
                continue
            feed.last_version = room.version
            try:
                await feed.websocket.send_json(snapshot_message(room))
            except Exception:
                logger.info("room %s: websocket went away, stopping its feed", feed.room_id)
                return


def snapshot_message(room: Room) -> dict[str, object]:
    return {"type": "room_snapshot", "room_id": room.room_id, "version": room.version, "room": room.model_dump(mode="json")}


hub = RoomWebSocketHub()
