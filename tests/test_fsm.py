from __future__ import annotations

import pytest

from app.api.models import GameState, RoomPhase, Subphase
from app.errors import PreconditionError
from app.fsm import RoomPhaseFSM, SubphaseFSM, apply_phase_event, apply_subphase_event


def test_phase_fsm_starts_from_model_phase() -> None:
    game = GameState(phase=RoomPhase.playing)
    fsm = RoomPhaseFSM(game)
    assert fsm.current_state == fsm.playing


def test_full_phase_lifecycle() -> None:
    game = GameState()
    for event, expected in [
        ("deal_roles", RoomPhase.revealing),
        ("all_revealed", RoomPhase.playing),
        ("enter_final_phase", RoomPhase.final_phase),
        ("decide", RoomPhase.finished),
        ("return_to_lobby", RoomPhase.waiting),
    ]:
        apply_phase_event(game, event)
        assert game.phase == expected


def test_playing_can_be_decided_without_final_phase() -> None:
    game = GameState(phase=RoomPhase.playing)
    apply_phase_event(game, "decide")
    assert game.phase == RoomPhase.finished


@pytest.mark.parametrize(
    "phase,event",
    [
        (RoomPhase.waiting, "all_revealed"),
        (RoomPhase.revealing, "deal_roles"),
        (RoomPhase.playing, "return_to_lobby"),
        (RoomPhase.waiting, "decide"),
        (RoomPhase.finished, "enter_final_phase"),
    ],
)
def test_illegal_phase_transition_is_a_precondition_error(phase: RoomPhase, event: str) -> None:
    game = GameState(phase=phase)
    with pytest.raises(PreconditionError):
        apply_phase_event(game, event)
    assert game.phase == phase


def test_turn_with_sabotage_roulette_and_doctor_punch() -> None:
    game = GameState(phase=RoomPhase.playing, subphase=Subphase.gm_stage)
    path = [
        ("stage_selected", Subphase.challenge_start),
        ("open_with_sabotage", Subphase.wolf_decision),
        ("sabotage_requested", Subphase.wolf_resolving),
        ("sabotage_settled", Subphase.await_result),
        ("failure_deferred", Subphase.await_doctor),
        ("failure_negated", Subphase.await_doctor_punch_result),
        ("proceed", Subphase.challenge_start),
        ("open_without_sabotage", Subphase.await_result),
        ("star_committed", Subphase.gm_stage),
    ]
    for event, expected in path:
        apply_subphase_event(game, event)
        assert game.subphase == expected


def test_star_can_be_committed_from_await_doctor() -> None:
    game = GameState(phase=RoomPhase.playing, subphase=Subphase.await_doctor)
    apply_subphase_event(game, "star_committed")
    assert game.subphase == Subphase.gm_stage


def test_illegal_subphase_transition_is_a_precondition_error() -> None:
    game = GameState(phase=RoomPhase.playing, subphase=Subphase.gm_stage)
    with pytest.raises(PreconditionError):
        apply_subphase_event(game, "star_committed")
    assert game.subphase == Subphase.gm_stage


def test_subphase_events_need_a_playing_room() -> None:
    game = GameState(phase=RoomPhase.final_phase, subphase=Subphase.gm_stage)
    with pytest.raises(PreconditionError):
        apply_subphase_event(game, "stage_selected")


def test_subphase_fsm_needs_a_turn_in_progress() -> None:
    with pytest.raises(PreconditionError):
        SubphaseFSM(GameState(phase=RoomPhase.playing, subphase=None))
