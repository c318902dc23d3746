"""Client-side reconciliation of room snapshots into one-shot effects.

The store only ever delivers whole records, so "what just happened" is derived
here: the last observed (phase, subphase, current_player_index, turn) tuple marks
edges, and every effect is keyed so a replayed or duplicated snapshot cannot
announce the same thing twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from app.api.models import (
    ChallengeOutcome,
    GameResult,
    PlayerResources,
    Role,
    Room,
    RoomPhase,
    Subphase,
)
from app.effects import Continuation, Effect, EffectScheduler, Indicator
from app.game_rules import current_player_id, final_voters, find_role

logger = logging.getLogger(__name__)

EdgeTuple = tuple[RoomPhase, Subphase | None, int, int]

# Which fired-set an effect key belongs to.
STEP = "step"
TURN = "turn"


@dataclass(frozen=True, slots=True)
class RoomView:
    room_id: str
    version: int
    phase: RoomPhase
    subphase: Subphase | None
    turn: int
    max_turns: int
    white_stars: int
    black_stars: int
    current_player_id: str | None
    current_stage: str | None
    is_host: bool
    my_role: Role | None
    my_resources: PlayerResources | None
    available_actions: tuple[str, ...]
    discussion_end_time: datetime | None
    final_phase_discussion_end_time: datetime | None
    game_result: GameResult | None

    @property
    def must_act(self) -> bool:
        return bool(self.available_actions)


def _available_actions(room: Room, viewer_id: str) -> tuple[str, ...]:
    gs = room.game_state
    me = room.players.get(viewer_id)
    if me is None:
        return ("join_room",) if gs.phase == RoomPhase.waiting else ()

    is_host = room.config.created_by == viewer_id
    acks = gs.result_return_lobby_acks
    actions: list[str] = []

    if gs.phase == RoomPhase.waiting:
        if acks and not acks.get(viewer_id):
            actions.append("reset_to_lobby")
        if is_host and 3 <= len(room.players) <= 8 and (not acks or all(acks.get(p) for p in room.players)):
            actions.append("start_game")
    elif gs.phase == RoomPhase.revealing:
        if not gs.reveal_acks.get(viewer_id):
            actions.append("acknowledge_reveal")
        if is_host and all(gs.reveal_acks.get(p) for p in room.players):
            actions.append("advance_after_all_acked")
    elif gs.phase == RoomPhase.playing:
        current = current_player_id(gs)
        if gs.discussion_phase:
            if is_host:
                actions += ["end_discussion", "extend_discussion"]
        elif gs.subphase == Subphase.gm_stage and is_host:
            actions.append("select_stage")
        if gs.subphase == Subphase.challenge_start and (is_host or viewer_id == current):
            actions.append("open_challenge")
        elif gs.subphase == Subphase.wolf_decision and me.role == Role.wolf:
            actions += ["activate_wolf_sabotage", "skip_wolf_sabotage"]
        elif gs.subphase == Subphase.wolf_resolving and me.role == Role.wolf:
            actions.append("resolve_wolf_sabotage")
        elif gs.subphase == Subphase.await_result and viewer_id == current:
            actions += ["record_challenge_success", "record_challenge_failure"]
        elif gs.subphase == Subphase.await_doctor and me.role == Role.doctor:
            actions += ["resolve_doctor_intervention", "skip_doctor_intervention"]
        elif gs.subphase == Subphase.await_doctor_punch_result:
            actions.append("proceed_after_doctor_punch")
    elif gs.phase == RoomPhase.final_phase:
        voters = final_voters(room)
        if viewer_id in voters and viewer_id not in gs.final_phase_votes:
            actions.append("submit_final_vote")
        if is_host and all(p in gs.final_phase_votes for p in voters):
            actions.append("tally_final_votes")
    elif gs.phase == RoomPhase.finished:
        actions.append("reset_to_lobby")

    return tuple(actions)


def project_view(room: Room, viewer_id: str) -> RoomView:
    gs = room.game_state
    me = room.players.get(viewer_id)
    return RoomView(
        room_id=room.room_id,
        version=room.version,
        phase=gs.phase,
        subphase=gs.subphase,
        turn=gs.turn,
        max_turns=gs.max_turns,
        white_stars=gs.white_stars,
        black_stars=gs.black_stars,
        current_player_id=current_player_id(gs),
        current_stage=gs.current_stage,
        is_host=room.config.created_by == viewer_id,
        my_role=me.role if me is not None else None,
        my_resources=me.resources.model_copy() if me is not None else None,
        available_actions=_available_actions(room, viewer_id),
        discussion_end_time=gs.discussion_end_time if gs.discussion_phase else None,
        final_phase_discussion_end_time=gs.final_phase_discussion_end_time,
        game_result=gs.game_result,
    )


def _name(room: Room, player_id: str | None) -> str:
    if player_id is None:
        return "?"
    p = room.players.get(player_id)
    return p.name if p is not None else player_id


class RoomReconciler:
    """Turns the snapshot stream of one room into effects for one viewer.

    Single-threaded: a snapshot delivered while a pass is running is dropped,
    since the next one carries the latest truth anyway.
    """

    def __init__(self, *, room_id: str, viewer_id: str, scheduler: EffectScheduler) -> None:
        self.room_id = room_id
        self.viewer_id = viewer_id
        self.scheduler = scheduler

        self.view: RoomView | None = None
        self.room: Room | None = None

        self._running = False
        self._last_version = -1
        self._last_edge: EdgeTuple | None = None
        self._last_turn_scope: tuple[RoomPhase, int] | None = None
        self._step_fired: set[tuple] = set()
        self._turn_fired: set[tuple] = set()
        self._deadlines_fired: set[tuple] = set()

        # Announcements carry a room-wide seq; per kind, anything at or below the mark is old news.
        self._notice_marks: dict[str, int] | None = None

    # --- entry points ----------------------------------------------------

    def reconcile(self, room: Room) -> list[Effect]:
        if self._running:
            logger.debug("room %s: reconcile already running, dropping v%d", room.room_id, room.version)
            return []
        if room.room_id != self.room_id:
            return []
        if room.version < self._last_version:
            logger.debug("room %s: stale snapshot v%d < v%d", room.room_id, room.version, self._last_version)
            return []

        self._running = True
        try:
            return self._reconcile(room)
        finally:
            self._running = False

    def check_deadlines(self, now: datetime) -> list[Continuation]:
        """Expiry calls for countdowns that have run out; each deadline is tried once."""

        room = self.room
        if room is None or room.players.get(self.viewer_id) is None:
            return []
        gs = room.game_state
        due: list[Continuation] = []

        if gs.phase == RoomPhase.playing and gs.discussion_phase and gs.discussion_end_time is not None:
            key = ("discussion", gs.turn, gs.discussion_end_time)
            if now >= gs.discussion_end_time and key not in self._deadlines_fired:
                self._deadlines_fired.add(key)
                due.append(Continuation(room_id=self.room_id, action="end_discussion"))

        deadline = gs.final_phase_discussion_end_time
        if gs.phase == RoomPhase.final_phase and deadline is not None:
            key = ("final_phase", deadline)
            if now >= deadline and key not in self._deadlines_fired:
                self._deadlines_fired.add(key)
                due.append(Continuation(room_id=self.room_id, action="expire_final_discussion"))

        return due

    # --- internals -------------------------------------------------------

    def _reconcile(self, room: Room) -> list[Effect]:
        gs = room.game_state
        self._last_version = room.version
        self.room = room
        self.view = project_view(room, self.viewer_id)

        edge: EdgeTuple = (gs.phase, gs.subphase, gs.current_player_index, gs.turn)
        if edge != self._last_edge:
            self._step_fired.clear()
            self._last_edge = edge
        turn_scope = (gs.phase, gs.turn)
        if turn_scope != self._last_turn_scope:
            self._turn_fired.clear()
            self._last_turn_scope = turn_scope

        if self._notice_marks is None:
            # First snapshot: earlier announcements are history, not news.
            self._notice_marks = {"result": gs.event_seq, "sabotage": gs.event_seq}

        emitted: list[Effect] = []
        for derive in _DERIVERS:
            try:
                derived = derive(self, room)
            except Exception:
                logger.exception("room %s: %s failed; skipping", room.room_id, derive.__name__)
                continue
            if derived is None:
                continue
            scope, effect = derived
            fired = self._step_fired if scope == STEP else self._turn_fired
            if effect.key in fired:
                continue
            fired.add(effect.key)
            self.scheduler.enqueue(effect)
            emitted.append(effect)

        self.scheduler.set_indicator(self._indicator(room))
        return emitted

    def _key(self, room: Room, slot: object, discriminator: str) -> tuple:
        return (room.room_id, room.game_state.turn, slot, discriminator)

    def _continuation(self, action: str, **payload: object) -> Continuation:
        return Continuation(room_id=self.room_id, action=action, payload=dict(payload))

    def _is_news(self, kind: str, seq: int) -> bool:
        marks = self._notice_marks or {}
        return seq > marks.get(kind, 0)

    def _mark_seen(self, kind: str, seq: int) -> None:
        if self._notice_marks is not None:
            self._notice_marks[kind] = max(seq, self._notice_marks.get(kind, 0))

    def _indicator(self, room: Room) -> Indicator | None:
        gs = room.game_state
        if gs.phase != RoomPhase.playing or gs.discussion_phase:
            return None
        me = room.players.get(self.viewer_id)
        my_role = me.role if me is not None else None
        if gs.subphase in (Subphase.wolf_decision, Subphase.wolf_resolving) and my_role != Role.wolf:
            return Indicator(kind="wolf_deciding", message="The wolf is deciding...")
        if gs.subphase == Subphase.await_doctor and my_role != Role.doctor:
            return Indicator(kind="doctor_deciding", message="The doctor is deciding...")
        current = current_player_id(gs)
        if gs.subphase == Subphase.await_result and current != self.viewer_id:
            return Indicator(kind="awaiting_result", message=f"Waiting for {_name(room, current)}'s result...")
        return None


# --- effect derivers ---------------------------------------------------------

# A deriver returns (fired-set scope, effect) or None.
Deriver = Callable[[RoomReconciler, Room], tuple[str, Effect] | None]


def _role_reveal(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    if room.game_state.phase != RoomPhase.revealing:
        return None
    me = room.players.get(rc.viewer_id)
    if me is None or me.role is None:
        return None
    return STEP, Effect(
        key=rc._key(room, "revealing", "role_reveal"),
        kind="role_reveal",
        message=f"You are the {me.role.value}",
        requires_ack=True,
        continuation=rc._continuation("acknowledge_reveal"),
        data={"role": me.role.value},
    )


def _reveal_complete(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.revealing or room.config.created_by != rc.viewer_id:
        return None
    if not all(gs.reveal_acks.get(p) for p in room.players):
        return None
    return STEP, Effect(
        key=rc._key(room, "revealing", "reveal_complete"),
        kind="reveal_complete",
        message="Everyone has seen their role",
        dismiss_after=1.5,
        continuation=rc._continuation("advance_after_all_acked"),
    )


def _new_turn(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.playing or gs.subphase != Subphase.gm_stage or gs.discussion_phase:
        return None
    return TURN, Effect(
        key=rc._key(room, "turn", "new_turn"),
        kind="new_turn",
        message=f"Turn {gs.turn} of {gs.max_turns}",
        data={"turn": gs.turn},
    )


def _stage_drawn(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.playing or gs.current_stage is None:
        return None
    return TURN, Effect(
        key=rc._key(room, "stage", f"stage:{gs.current_stage}"),
        kind="stage_drawn",
        message=f"Stage {gs.current_stage}",
        data={"stage": gs.current_stage},
    )


def _challenge_announcement(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.playing or gs.subphase != Subphase.challenge_start:
        return None
    current = current_player_id(gs)
    may_open = rc.viewer_id == room.config.created_by or rc.viewer_id == current
    return STEP, Effect(
        key=rc._key(room, gs.current_player_index, "challenge"),
        kind="challenge",
        message=f"{_name(room, current)} takes on stage {gs.current_stage}",
        continuation=rc._continuation("open_challenge") if may_open else None,
        data={"player_id": current},
    )


def _wolf_prompt(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    me = room.players.get(rc.viewer_id)
    if gs.phase != RoomPhase.playing or me is None or me.role != Role.wolf:
        return None
    if gs.subphase == Subphase.wolf_decision:
        return STEP, Effect(
            key=rc._key(room, gs.current_player_index, "wolf_decision"),
            kind="wolf_decision",
            message=f"Choose a sabotage ({me.resources.wolf_actions_remaining} left) or pass",
            data={"remaining": me.resources.wolf_actions_remaining},
        )
    if gs.subphase == Subphase.wolf_resolving and gs.wolf_action_request is not None:
        return STEP, Effect(
            key=rc._key(room, gs.current_player_index, "wolf_roulette"),
            kind="wolf_roulette",
            message=f"Spinning the roulette for {gs.wolf_action_request.action}",
            dismiss_after=2.0,
            continuation=rc._continuation("resolve_wolf_sabotage"),
        )
    return None


def _sabotage_announcement(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    notice = room.game_state.last_sabotage
    if notice is None or not rc._is_news("sabotage", notice.seq):
        return None
    rc._mark_seen("sabotage", notice.seq)
    detail = f": {notice.outcome}" if notice.outcome else ""
    return TURN, Effect(
        key=rc._key(room, "sabotage", f"sabotage:{notice.seq}"),
        kind="sabotage",
        message=f"Sabotage! {notice.action}{detail}",
        data={"action": notice.action, "outcome": notice.outcome},
    )


def _doctor_prompt(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    me = room.players.get(rc.viewer_id)
    if gs.phase != RoomPhase.playing or gs.subphase != Subphase.await_doctor or gs.pending_failure is None:
        return None
    if me is None or me.role != Role.doctor:
        return None
    return STEP, Effect(
        key=rc._key(room, gs.current_player_index, "doctor"),
        kind="doctor_prompt",
        message=f"{_name(room, gs.pending_failure.player_id)} failed. Punch? ({me.resources.doctor_punch_remaining} left)",
        data={"player_id": gs.pending_failure.player_id},
    )


def _challenge_result(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    result = room.game_state.last_result
    if result is None or not rc._is_news("result", result.seq):
        return None
    rc._mark_seen("result", result.seq)
    who = _name(room, result.player_id)
    if result.outcome == ChallengeOutcome.negated:
        return TURN, Effect(
            key=rc._key(room, "result", f"result:{result.seq}"),
            kind="challenge_result",
            message=f"Doctor punch! {who}'s failure is cancelled",
            continuation=rc._continuation("proceed_after_doctor_punch"),
            data={"outcome": result.outcome.value, "player_id": result.player_id},
        )
    star = "white" if result.outcome == ChallengeOutcome.success else "black"
    return TURN, Effect(
        key=rc._key(room, "result", f"result:{result.seq}"),
        kind="challenge_result",
        message=f"{who}: {result.outcome.value} ({star} star)",
        data={"outcome": result.outcome.value, "player_id": result.player_id},
    )


def _discussion_started(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.playing or not gs.discussion_phase:
        return None
    return TURN, Effect(
        key=rc._key(room, "discussion", "discussion"),
        kind="discussion",
        message="Discussion time",
        data={"ends_at": gs.discussion_end_time.isoformat() if gs.discussion_end_time else None},
    )


def _final_phase(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    if room.game_state.phase != RoomPhase.final_phase:
        return None
    return TURN, Effect(
        key=rc._key(room, "final_phase", "final_phase"),
        kind="final_phase",
        message="Black stars won. Find the wolf: everyone votes for one player",
        requires_ack=True,
    )


def _game_result(rc: RoomReconciler, room: Room) -> tuple[str, Effect] | None:
    gs = room.game_state
    if gs.phase != RoomPhase.finished or gs.game_result is None:
        return None
    wolf = find_role(room, Role.wolf)
    return TURN, Effect(
        key=rc._key(room, "finished", f"result:{gs.game_result.value}"),
        kind="game_result",
        message=f"{gs.game_result.value}: the wolf was {_name(room, wolf.player_id if wolf else None)}",
        requires_ack=True,
        continuation=rc._continuation("reset_to_lobby"),
        data={"result": gs.game_result.value, "vote_counts": dict(gs.final_phase_vote_counts)},
    )


_DERIVERS: list[Deriver] = [
    _role_reveal,
    _reveal_complete,
    _sabotage_announcement,
    _challenge_result,
    _discussion_started,
    _new_turn,
    _stage_drawn,
    _challenge_announcement,
    _wolf_prompt,
    _doctor_prompt,
    _final_phase,
    _game_result,
]
