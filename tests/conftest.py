from __future__ import annotations

import random
from collections.abc import Callable, Generator

import fakeredis
import pytest
from fastapi.testclient import TestClient

from app.api.models import Room, RoomOptions
from app.coordinator import GameCoordinator
from app.room_store import RoomStore
from helpers import FakeClock

RoomFactory = Callable[..., Room]


@pytest.fixture()
def r() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(r: fakeredis.FakeRedis, clock: FakeClock) -> RoomStore:
    return RoomStore(r=r, max_retries=5, clock=clock)


@pytest.fixture()
def coordinator(store: RoomStore, clock: FakeClock) -> GameCoordinator:
    return GameCoordinator(store=store, rng=random.Random(1234), clock=clock)


@pytest.fixture()
def make_room(coordinator: GameCoordinator) -> RoomFactory:
    """Room in the lobby with `players` members p1..pN; p1 is the host."""

    def _make(players: int = 4, **options: object) -> Room:
        ids = [f"p{i}" for i in range(1, players + 1)]
        room = coordinator.create_room(host_id=ids[0], options=RoomOptions(host_name="P1", **options))
        for pid in ids[1:]:
            room = coordinator.join_room(room.room_id, pid, name=pid.upper())
        return room

    return _make


@pytest.fixture()
def playing_room(coordinator: GameCoordinator, make_room: RoomFactory) -> RoomFactory:
    """Room past the reveal, sitting in gm_stage of turn 1."""

    def _make(players: int = 4, **options: object) -> Room:
        room = make_room(players, **options)
        room = coordinator.start_game(room.room_id, "p1")
        for pid in room.players:
            room = coordinator.acknowledge_reveal(room.room_id, pid)
        return coordinator.advance_after_all_acked(room.room_id, "p1")

    return _make


@pytest.fixture()
def client_and_redis() -> Generator[tuple[TestClient, fakeredis.FakeRedis], None, None]:
    """FastAPI TestClient wired to a private fakeredis."""

    from app.api.deps import get_redis
    from app.main import app

    r = fakeredis.FakeRedis(decode_responses=True)

    def _override() -> Generator[fakeredis.FakeRedis, None, None]:
        yield r

    app.dependency_overrides[get_redis] = _override
    with TestClient(app) as c:
        yield c, r
    app.dependency_overrides.clear()
