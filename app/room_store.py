from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

import redis

from app.api.models import Room
from app.errors import ConflictError, NotFoundError
from app.infra.redis_client import get_tx_max_retries
from app.streams import SnapshotHandler, Subscription, open_subscription, publish_snapshot

logger = logging.getLogger(__name__)

ROOM_KEY_PREFIX = "wolfroom:room:"  # + {room_id}

# Returns the next record, or None to leave the room untouched.
Mutation = Callable[[Room], Room | None]


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _room_key(room_id: str) -> str:
    return f"{ROOM_KEY_PREFIX}{room_id}"


class RoomStore:
    """One JSON record per room in Redis.

    Writes go through `transact`, an optimistic WATCH/MULTI/EXEC loop: the mutation
    always runs against the record as it was when the key was watched, and a
    concurrent commit forces a fresh read and a rerun. Every commit is pushed to
    the room's pub/sub channel as a full snapshot.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        max_retries: int | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.r = r
        self.max_retries = max_retries if max_retries is not None else get_tx_max_retries()
        self._clock = clock

    def get(self, room_id: str) -> Room | None:
        raw = self.r.get(_room_key(room_id))
        if not raw:
            return None
        return Room.model_validate_json(raw)

    def require(self, room_id: str) -> Room:
        room = self.get(room_id)
        if room is None:
            raise NotFoundError(room_id)
        return room

    def create(self, room: Room) -> Room:
        """Unconditional write: a second room created under the same id replaces the first."""

        room.version += 1
        room.last_updated_at = self._clock()
        self.r.set(_room_key(room.room_id), room.model_dump_json())
        publish_snapshot(r=self.r, room=room)
        return room

    def transact(self, room_id: str, fn: Mutation) -> Room:
        key = _room_key(room_id)
        with self.r.pipeline() as pipe:
            for attempt in range(1, self.max_retries + 1):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw:
                        raise NotFoundError(room_id)
                    current = Room.model_validate_json(raw)

                    updated = fn(current.model_copy(deep=True))
                    if updated is None:
                        return current

                    updated.version = current.version + 1
                    updated.last_updated_at = self._clock()

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    pipe.execute()
                except redis.WatchError:
                    logger.debug("room %s changed during transaction (attempt %d), retrying", room_id, attempt)
                    continue

                publish_snapshot(r=self.r, room=updated)
                return updated

        raise ConflictError(room_id, self.max_retries)

    def subscribe(self, room_id: str, on_snapshot: SnapshotHandler, *, threaded: bool = False) -> Subscription:
        """Deliver the current record right away, then every committed record.

        The channel is joined before the initial read so no commit falls in between;
        at worst the first snapshot is delivered twice. With `threaded=True` the
        initial delivery runs on the calling thread and can overlap the worker, so
        the handler must be thread-safe.
        """

        sub = open_subscription(r=self.r, room_id=room_id, on_snapshot=on_snapshot, threaded=threaded)
        current = self.get(room_id)
        if current is not None:
            sub.deliver({"type": "message", "data": current.model_dump_json()})
        return sub
