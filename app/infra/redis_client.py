from __future__ import annotations

import os

import redis


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", "redis://localhost:6379/0")


def get_tx_max_retries() -> int:
    """How many WATCH/EXEC rounds a room transaction gets before giving up."""

    return max(1, int(os.environ.get("ROOM_TX_MAX_RETRIES", "25")))


def create_redis() -> redis.Redis:
    # decode_responses=True => strings in/out instead of bytes
    return redis.Redis.from_url(get_redis_url(), decode_responses=True)
