from __future__ import annotations

from app.api.models import RoomPhase
from app.client import RoomClient
from app.coordinator import GameCoordinator
from helpers import FakeClock, current_player, to_await_result


class Ticker:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def _clients(coordinator: GameCoordinator, room_id: str, players: list[str], clock: FakeClock) -> dict[str, tuple[RoomClient, Ticker]]:
    out: dict[str, tuple[RoomClient, Ticker]] = {}
    for pid in players:
        ticker = Ticker()
        client = RoomClient(coordinator=coordinator, room_id=room_id, player_id=pid, monotonic=ticker, wall_clock=clock)
        client.start()
        out[pid] = (client, ticker)
    return out


def test_reveal_handshake_runs_through_continuations(coordinator: GameCoordinator, make_room, clock: FakeClock) -> None:
    room = make_room(3)
    clients = _clients(coordinator, room.room_id, list(room.players), clock)

    coordinator.start_game(room.room_id, "p1")
    for client, _ in clients.values():
        client.poll()
        assert client.scheduler.visible is not None
        assert client.scheduler.visible.kind == "role_reveal"

    for client, _ in clients.values():
        assert client.scheduler.acknowledge()

    assert coordinator.get_room(room.room_id).game_state.reveal_acks == {"p1": True, "p2": True, "p3": True}

    host, host_ticker = clients["p1"]
    host.poll()
    assert host.scheduler.visible is not None
    assert host.scheduler.visible.kind == "reveal_complete"

    host_ticker.t = 2.0
    host.poll()
    assert host.view is not None
    assert host.view.phase == RoomPhase.playing

    for pid in ["p2", "p3"]:
        client, _ = clients[pid]
        client.poll()
        assert client.view is not None and client.view.phase == RoomPhase.playing
        assert client.scheduler.visible is not None and client.scheduler.visible.kind == "new_turn"

    for client, _ in clients.values():
        client.close()


def test_expired_discussion_is_closed_by_whoever_notices_first(
    coordinator: GameCoordinator, playing_room, clock: FakeClock
) -> None:
    room = to_await_result(coordinator, playing_room(3, discussion_seconds=60))
    room = coordinator.record_challenge_success(room.room_id, current_player(room))
    assert room.game_state.discussion_phase

    clients = _clients(coordinator, room.room_id, ["p2", "p3"], clock)
    for client, _ in clients.values():
        client.poll()

    clock.advance(60)
    first, _ = clients["p2"]
    second, _ = clients["p3"]
    first.poll()
    second.poll()

    latest = coordinator.get_room(room.room_id)
    assert not latest.game_state.discussion_phase
    assert latest.version == room.version + 1
    assert second.view is not None and second.view.discussion_end_time is None

    for client, _ in clients.values():
        client.close()
