from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.api.models import Role, Room, Subphase
from app.coordinator import GameCoordinator


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def player_with_role(room: Room, role: Role) -> str:
    return next(pid for pid, p in room.players.items() if p.role == role)


def current_player(room: Room) -> str:
    gs = room.game_state
    assert gs.player_order is not None
    return gs.player_order[gs.current_player_index]


def to_await_result(coordinator: GameCoordinator, room: Room) -> Room:
    """From gm_stage: close any discussion, draw the stage, open the challenge, let the wolf pass."""

    if room.game_state.discussion_phase:
        room = coordinator.end_discussion(room.room_id, "p1")
    room = coordinator.select_stage(room.room_id, "p1")
    room = coordinator.open_challenge(room.room_id, "p1")
    if room.game_state.subphase == Subphase.wolf_decision:
        room = coordinator.skip_wolf_sabotage(room.room_id, player_with_role(room, Role.wolf))
    return room
