from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import redis
from redis.client import PubSub, PubSubWorkerThread

from app.api.models import Room

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[Room], None]


@dataclass(frozen=True, slots=True)
class RoomChannel:
    room_id: str

    @property
    def key(self) -> str:
        return f"wolfroom:snapshots:{self.room_id}"


def publish_snapshot(*, r: redis.Redis, room: Room) -> int:
    """Push the full committed record to every subscriber of the room.

    Returns the number of subscribers that received it.
    """

    receivers = r.publish(RoomChannel(room_id=room.room_id).key, room.model_dump_json())
    return cast(int, receivers)


def _decode(message: dict[str, Any]) -> Room | None:
    data = message.get("data")
    if not isinstance(data, (str, bytes)):
        return None
    return Room.model_validate_json(data)


class Subscription:
    """Live snapshot feed for one room.

    Calling the subscription unsubscribes. Without a background thread the owner
    drains pending snapshots with `pump()`. With one, the handler runs on the
    worker thread and must hand snapshots off in a thread-safe way.
    """

    def __init__(self, *, pubsub: PubSub, on_snapshot: SnapshotHandler) -> None:
        self._pubsub = pubsub
        self._on_snapshot = on_snapshot
        self._thread: PubSubWorkerThread | None = None
        self.closed = False

    def run_in_thread(self, sleep_time: float = 0.05) -> None:
        self._thread = self._pubsub.run_in_thread(sleep_time=sleep_time, daemon=True)

    def deliver(self, message: dict[str, Any]) -> None:
        room = _decode(message)
        if room is None:
            return
        try:
            self._on_snapshot(room)
        except Exception:
            # A broken handler must not kill the feed; the next snapshot carries the full truth.
            logger.exception("snapshot handler failed for room %s", room.room_id)

    def pump(self, timeout: float = 0.0) -> int:
        """Deliver every snapshot already waiting on the channel. Returns how many were delivered."""

        delivered = 0
        while True:
            message = self._pubsub.get_message(timeout=timeout)
            if message is None:
                return delivered
            # Subscribe confirmations share the connection with real payloads.
            if message.get("type") != "message":
                continue
            self.deliver(message)
            delivered += 1

    def __call__(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._thread is not None:
            # The worker closes the pubsub itself once it sees the stop flag.
            self._thread.stop()
            self._thread.join(timeout=1.0)
        else:
            self._pubsub.unsubscribe()
        self._pubsub.close()


def open_subscription(*, r: redis.Redis, room_id: str, on_snapshot: SnapshotHandler, threaded: bool) -> Subscription:
    pubsub = r.pubsub()
    key = RoomChannel(room_id=room_id).key
    sub = Subscription(pubsub=pubsub, on_snapshot=on_snapshot)
    if threaded:
        pubsub.subscribe(**{key: sub.deliver})
        sub.run_in_thread()
    else:
        pubsub.subscribe(key)
    return sub
