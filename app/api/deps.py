from __future__ import annotations

from collections.abc import Generator

import redis
from fastapi import Depends, Header, HTTPException, status

from app.coordinator import GameCoordinator
from app.infra.redis_client import create_redis
from app.room_store import RoomStore


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        client.close()


def get_coordinator(r: redis.Redis = Depends(get_redis)) -> GameCoordinator:
    return GameCoordinator(store=RoomStore(r=r))


def get_player_id(x_player_id: str | None = Header(default=None)) -> str:
    """Opaque per-session identity; every rule authorizes against it."""

    if not x_player_id or not x_player_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Player-Id header is required")
    return x_player_id.strip()
