from __future__ import annotations


class GameError(ValueError):
    """Base class for every rejection raised by the room coordinator.

    Subclasses ValueError so callers that only know "bad request" semantics
    keep working.
    """

    status_code: int = 422


class AuthorizationError(GameError):
    """Caller lacks the role or host identity the transition requires."""

    status_code = 403


class PreconditionError(GameError):
    """Wrong phase/subphase, exhausted resource or duplicate submission."""

    status_code = 409


class NotFoundError(GameError):
    status_code = 404

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class ConflictError(GameError):
    """The store gave up after repeated concurrent writes to the same room."""

    status_code = 409

    def __init__(self, room_id: str, attempts: int) -> None:
        self.room_id = room_id
        self.attempts = attempts
        super().__init__(f"Room {room_id} kept changing underneath us ({attempts} attempts)")


class ValidationError(GameError):
    """Malformed input, rejected before any transaction is attempted."""

    status_code = 422
