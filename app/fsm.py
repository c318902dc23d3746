from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from app.api.models import GameState, RoomPhase, Subphase
from app.errors import PreconditionError


class RoomPhaseFSM(StateMachine):
    """Top-level room lifecycle.

    waiting -> revealing -> playing -> final_phase -> finished, plus playing -> finished
    for games decided by stars alone. finished -> waiting only via return-to-lobby.
    The coordinator mutates GameState; this machine only guards the transitions.
    """

    waiting = State(RoomPhase.waiting.value, value=RoomPhase.waiting.value, initial=True)
    revealing = State(RoomPhase.revealing.value, value=RoomPhase.revealing.value)
    playing = State(RoomPhase.playing.value, value=RoomPhase.playing.value)
    final_phase = State(RoomPhase.final_phase.value, value=RoomPhase.final_phase.value)
    finished = State(RoomPhase.finished.value, value=RoomPhase.finished.value)

    deal_roles = waiting.to(revealing)
    all_revealed = revealing.to(playing)
    enter_final_phase = playing.to(final_phase)
    decide = playing.to(finished) | final_phase.to(finished)
    return_to_lobby = finished.to(waiting)

    def __init__(self, game: GameState):
        self.game = game
        super().__init__(start_value=game.phase.value)

    def sync_phase_to_model(self) -> None:
        self.game.phase = RoomPhase(str(self.current_state.value))


class SubphaseFSM(StateMachine):
    """Per-turn flow while the room is playing.

    gm_stage -> challenge_start -> [wolf_decision -> [wolf_resolving]] -> await_result
    -> [await_doctor -> [await_doctor_punch_result -> challenge_start]] -> gm_stage
    """

    gm_stage = State(Subphase.gm_stage.value, value=Subphase.gm_stage.value, initial=True)
    challenge_start = State(Subphase.challenge_start.value, value=Subphase.challenge_start.value)
    wolf_decision = State(Subphase.wolf_decision.value, value=Subphase.wolf_decision.value)
    wolf_resolving = State(Subphase.wolf_resolving.value, value=Subphase.wolf_resolving.value)
    await_result = State(Subphase.await_result.value, value=Subphase.await_result.value)
    await_doctor = State(Subphase.await_doctor.value, value=Subphase.await_doctor.value)
    await_doctor_punch_result = State(
        Subphase.await_doctor_punch_result.value,
        value=Subphase.await_doctor_punch_result.value,
    )

    stage_selected = gm_stage.to(challenge_start)
    open_with_sabotage = challenge_start.to(wolf_decision)
    open_without_sabotage = challenge_start.to(await_result)
    sabotage_requested = wolf_decision.to(wolf_resolving)
    sabotage_settled = wolf_decision.to(await_result) | wolf_resolving.to(await_result)
    failure_deferred = await_result.to(await_doctor)
    failure_negated = await_doctor.to(await_doctor_punch_result)
    proceed = await_doctor_punch_result.to(challenge_start)
    star_committed = await_result.to(gm_stage) | await_doctor.to(gm_stage)

    def __init__(self, game: GameState):
        if game.subphase is None:
            raise PreconditionError("No turn is in progress")
        self.game = game
        super().__init__(start_value=game.subphase.value)

    def sync_subphase_to_model(self) -> None:
        self.game.subphase = Subphase(str(self.current_state.value))


def apply_phase_event(game: GameState, event: str) -> None:
    fsm = RoomPhaseFSM(game)
    before = fsm.current_state
    try:
        fsm.send(event)
    except TransitionNotAllowed as e:
        raise PreconditionError(f"'{event}' not allowed in phase '{game.phase.value}'") from e
    if fsm.current_state == before:
        raise PreconditionError(f"'{event}' not allowed in phase '{game.phase.value}'")
    fsm.sync_phase_to_model()


def apply_subphase_event(game: GameState, event: str) -> None:
    if game.phase != RoomPhase.playing:
        raise PreconditionError(f"Game is not in playing phase (phase: {game.phase.value})")
    fsm = SubphaseFSM(game)
    before = fsm.current_state
    try:
        fsm.send(event)
    except TransitionNotAllowed as e:
        raise PreconditionError(f"'{event}' not allowed in subphase '{game.subphase}'") from e
    if fsm.current_state == before:
        raise PreconditionError(f"'{event}' not allowed in subphase '{game.subphase}'")
    fsm.sync_subphase_to_model()
