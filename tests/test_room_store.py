from __future__ import annotations

import queue
from datetime import UTC, datetime

import fakeredis
import pytest

from app.api.models import Room, RoomConfig
from app.errors import ConflictError, NotFoundError
from app.room_store import RoomStore


def _room(room_id: str = "ABC123") -> Room:
    now = datetime(2024, 1, 1, tzinfo=UTC)
    return Room(
        room_id=room_id,
        config=RoomConfig(room_id=room_id, created_by="host", created_at=now),
        created_at=now,
        last_updated_at=now,
    )


def test_create_then_get_round_trips_and_bumps_version(store: RoomStore) -> None:
    created = store.create(_room())
    assert created.version == 1

    loaded = store.get("ABC123")
    assert loaded is not None
    assert loaded.version == 1
    assert loaded.config.created_by == "host"


def test_require_missing_room_raises_not_found(store: RoomStore) -> None:
    assert store.get("NOPE00") is None
    with pytest.raises(NotFoundError):
        store.require("NOPE00")
    with pytest.raises(NotFoundError):
        store.transact("NOPE00", lambda room: room)


def test_transact_commits_and_returns_new_record(store: RoomStore) -> None:
    store.create(_room())

    def _mutate(room: Room) -> Room:
        room.random_results["x"] = 1
        return room

    updated = store.transact("ABC123", _mutate)
    assert updated.version == 2
    assert store.require("ABC123").random_results == {"x": 1}


def test_transact_returning_none_writes_nothing(store: RoomStore) -> None:
    store.create(_room())
    seen: list[Room] = []
    sub = store.subscribe("ABC123", seen.append, threaded=False)
    seen.clear()

    result = store.transact("ABC123", lambda room: None)

    assert result.version == 1
    assert store.require("ABC123").version == 1
    assert sub.pump() == 0
    sub()


def test_transact_retries_after_concurrent_commit() -> None:
    server = fakeredis.FakeServer()
    ours = RoomStore(r=fakeredis.FakeRedis(server=server, decode_responses=True), max_retries=3)
    theirs = RoomStore(r=fakeredis.FakeRedis(server=server, decode_responses=True), max_retries=3)
    ours.create(_room())

    calls: list[int] = []

    def _mutate(room: Room) -> Room:
        calls.append(room.version)
        if len(calls) == 1:
            # Someone else commits between our read and our write.
            def _theirs(other: Room) -> Room:
                other.random_results["theirs"] = True
                return other

            theirs.transact("ABC123", _theirs)
        room.random_results["ours"] = True
        return room

    result = ours.transact("ABC123", _mutate)

    assert calls == [1, 2]
    assert result.version == 3
    assert result.random_results == {"theirs": True, "ours": True}


def test_transact_gives_up_with_conflict_error() -> None:
    server = fakeredis.FakeServer()
    ours = RoomStore(r=fakeredis.FakeRedis(server=server, decode_responses=True), max_retries=2)
    theirs = RoomStore(r=fakeredis.FakeRedis(server=server, decode_responses=True), max_retries=2)
    ours.create(_room())

    def _always_interfere(room: Room) -> Room:
        theirs.transact("ABC123", lambda other: other)
        return room

    with pytest.raises(ConflictError) as exc:
        ours.transact("ABC123", _always_interfere)
    assert exc.value.attempts == 2
    assert exc.value.status_code == 409


def test_subscribe_delivers_current_then_every_commit(store: RoomStore) -> None:
    store.create(_room())
    seen: list[int] = []

    sub = store.subscribe("ABC123", lambda room: seen.append(room.version), threaded=False)
    assert seen == [1]

    store.transact("ABC123", lambda room: room)
    store.transact("ABC123", lambda room: room)
    assert sub.pump() == 2
    assert seen == [1, 2, 3]

    sub()
    sub()
    assert sub.closed


def test_broken_snapshot_handler_does_not_kill_the_feed(store: RoomStore) -> None:
    store.create(_room())
    seen: list[int] = []

    def _handler(room: Room) -> None:
        seen.append(room.version)
        if room.version == 2:
            raise RuntimeError("render target missing")

    sub = store.subscribe("ABC123", _handler, threaded=False)
    store.transact("ABC123", lambda room: room)
    store.transact("ABC123", lambda room: room)
    sub.pump()

    assert seen == [1, 2, 3]
    sub()


def test_threaded_subscription_delivers_from_the_worker(store: RoomStore) -> None:
    store.create(_room())
    seen: queue.Queue[int] = queue.Queue()

    sub = store.subscribe("ABC123", lambda room: seen.put(room.version), threaded=True)
    try:
        assert seen.get(timeout=2) == 1
        store.transact("ABC123", lambda room: room)
        assert seen.get(timeout=2) == 2
    finally:
        sub()

    assert sub.closed
    store.transact("ABC123", lambda room: room)
    with pytest.raises(queue.Empty):
        seen.get(timeout=0.2)
