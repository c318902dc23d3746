"""Pure room transitions.

Every rule takes a private copy of the committed Room plus the caller context and
either returns the next Room, returns None (nothing to do, nothing is written) or
raises a GameError. Rules never touch the store; the coordinator runs each one
inside a single RoomStore transaction.
"""

from __future__ import annotations

import math
import random
import string
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.api.models import (
    ChallengeOutcome,
    ChallengeResult,
    GameResult,
    GameState,
    LogEntry,
    PendingFailure,
    PlayerResources,
    PlayerState,
    Role,
    Room,
    RoomConfig,
    RoomOptions,
    RoomPhase,
    SabotageNotice,
    Subphase,
    WolfActionRequest,
    WolfActionSpec,
)
from app.errors import AuthorizationError, PreconditionError, ValidationError
from app.fsm import apply_phase_event, apply_subphase_event

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 6

MIN_PLAYERS = 3
MAX_PLAYERS = 8


@dataclass(frozen=True, slots=True)
class RuleContext:
    caller_id: str
    now: datetime
    rng: random.Random


def generate_room_id(rng: random.Random) -> str:
    return "".join(rng.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))


def is_valid_room_id(room_id: str) -> bool:
    return len(room_id) == ROOM_ID_LENGTH and all(c in ROOM_ID_ALPHABET for c in room_id)


def draw_roles(*, player_count: int, rng: random.Random) -> list[Role]:
    """One wolf, one doctor, the rest citizens, uniformly shuffled."""

    if player_count < MIN_PLAYERS or player_count > MAX_PLAYERS:
        raise PreconditionError(f"Player count must be {MIN_PLAYERS}-{MAX_PLAYERS} to start (got {player_count})")

    roles = [Role.wolf, Role.doctor]
    while len(roles) < player_count:
        roles.append(Role.citizen)
    rng.shuffle(roles)
    return roles


def lobby_resources(config: RoomOptions) -> PlayerResources:
    return PlayerResources(
        wolf_actions_remaining=config.wolf_initial_cost,
        doctor_punch_remaining=config.doctor_punch_count,
        doctor_punch_available_this_turn=True,
    )


def role_resources(config: RoomOptions, role: Role) -> PlayerResources:
    if role == Role.wolf:
        return PlayerResources(wolf_actions_remaining=config.wolf_initial_cost)
    if role == Role.doctor:
        return PlayerResources(doctor_punch_remaining=config.doctor_punch_count, doctor_punch_available_this_turn=True)
    return PlayerResources(doctor_punch_available_this_turn=False)


def fresh_game_state(config: RoomOptions, *, event_seq: int = 0) -> GameState:
    # event_seq survives resets so announcement ids never repeat within a room.
    return GameState(max_turns=config.max_turns, event_seq=event_seq)


def new_room(*, room_id: str, host_id: str, options: RoomOptions, now: datetime) -> Room:
    config = RoomConfig(
        **options.model_dump(),
        room_id=room_id,
        created_by=host_id,
        created_at=now,
    )
    host = PlayerState(
        player_id=host_id,
        name=options.host_name,
        avatar_letter=options.host_name[:1] or "?",
        resources=lobby_resources(options),
        is_host=True,
        joined_at=now,
    )
    room = Room(
        room_id=room_id,
        config=config,
        game_state=fresh_game_state(options),
        players={host_id: host},
        created_at=now,
        last_updated_at=now,
    )
    _log(room, now=now, kind="room_created", message=f"Room {room_id} created by {options.host_name}", actor_id=host_id)
    return room


# --- helpers ---------------------------------------------------------------


def _log(room: Room, *, now: datetime, kind: str, message: str, actor_id: str | None = None, player_id: str | None = None) -> None:
    room.logs.append(
        LogEntry(
            seq=len(room.logs) + 1,
            kind=kind,
            message=message,
            actor_id=actor_id,
            player_id=player_id,
            ts=now,
        )
    )


def _next_seq(gs: GameState) -> int:
    gs.event_seq += 1
    return gs.event_seq


def _name(room: Room, player_id: str | None) -> str:
    if player_id is None:
        return "?"
    p = room.players.get(player_id)
    return p.name if p is not None else player_id


def _require_player(room: Room, player_id: str) -> PlayerState:
    player = room.players.get(player_id)
    if player is None:
        raise AuthorizationError("Caller is not a player in this room")
    return player


def _require_host(room: Room, caller_id: str, what: str) -> None:
    if room.config.created_by != caller_id:
        raise AuthorizationError(f"Only the host can {what}")


def find_role(room: Room, role: Role) -> PlayerState | None:
    return next((p for p in room.players.values() if p.role == role), None)


def _require_role(room: Room, caller_id: str, role: Role) -> PlayerState:
    player = _require_player(room, caller_id)
    if player.role != role:
        raise AuthorizationError(f"Only the {role.value} can do this")
    return player


def _require_phase(gs: GameState, phase: RoomPhase) -> None:
    if gs.phase != phase:
        raise PreconditionError(f"Game is not in {phase.value} phase (phase: {gs.phase.value})")


def _require_subphase(gs: GameState, subphase: Subphase) -> None:
    if gs.subphase != subphase:
        current = gs.subphase.value if gs.subphase is not None else "none"
        raise PreconditionError(f"Not in {subphase.value} (subphase: {current})")


def current_player_id(gs: GameState) -> str | None:
    if not gs.player_order:
        return None
    return gs.player_order[gs.current_player_index % len(gs.player_order)]


def _require_current_player(room: Room, caller_id: str) -> None:
    _require_player(room, caller_id)
    if current_player_id(room.game_state) != caller_id:
        raise AuthorizationError("Only the current player can report this challenge")


def wolf_action_spec(config: RoomOptions, name: str) -> WolfActionSpec:
    spec = next((a for a in config.wolf_actions if a.name == name), None)
    if spec is None:
        raise ValidationError(f"Unknown sabotage: {name}")
    return spec


def wolf_can_act(room: Room) -> bool:
    wolf = find_role(room, Role.wolf)
    if wolf is None or not room.config.wolf_actions:
        return False
    cheapest = min(a.cost for a in room.config.wolf_actions)
    return wolf.resources.wolf_actions_remaining >= cheapest


def _advance_index(gs: GameState) -> None:
    order = gs.player_order or []
    if order:
        gs.current_player_index = (gs.current_player_index + 1) % len(order)


def _restore_doctor(room: Room) -> None:
    doctor = find_role(room, Role.doctor)
    if doctor is not None:
        doctor.resources.doctor_punch_available_this_turn = True


def majority(max_turns: int) -> int:
    return math.ceil(max_turns / 2)


# --- lobby -----------------------------------------------------------------


def join_room(room: Room, ctx: RuleContext, *, name: str) -> Room | None:
    gs = room.game_state
    existing = room.players.get(ctx.caller_id)
    if existing is not None:
        if existing.name == name:
            return None
        existing.name = name
        existing.avatar_letter = name[:1] or "?"
        return room

    if gs.phase != RoomPhase.waiting:
        raise PreconditionError(f"Game already started (phase: {gs.phase.value})")
    if len(room.players) >= MAX_PLAYERS:
        raise PreconditionError(f"Room is full ({MAX_PLAYERS} players)")

    room.players[ctx.caller_id] = PlayerState(
        player_id=ctx.caller_id,
        name=name,
        avatar_letter=name[:1] or "?",
        resources=lobby_resources(room.config),
        is_host=ctx.caller_id == room.config.created_by,
        joined_at=ctx.now,
    )
    # Someone joining the lobby after a match is already "back in the lobby".
    if gs.result_return_lobby_acks:
        gs.result_return_lobby_acks[ctx.caller_id] = True
    _log(room, now=ctx.now, kind="join", message=f"{name} joined", actor_id=ctx.caller_id)
    return room


def start_game(room: Room, ctx: RuleContext) -> Room:
    _require_host(room, ctx.caller_id, "start the game")
    gs = room.game_state
    _require_phase(gs, RoomPhase.waiting)

    player_ids = list(room.players)
    acks = gs.result_return_lobby_acks
    if acks and not all(acks.get(pid) for pid in player_ids):
        raise PreconditionError("Every player must return to the lobby before a new game")

    roles = draw_roles(player_count=len(player_ids), rng=ctx.rng)

    fresh = fresh_game_state(room.config, event_seq=gs.event_seq)
    fresh.phase = gs.phase
    apply_phase_event(fresh, "deal_roles")
    room.game_state = fresh

    for pid, role in zip(player_ids, roles, strict=True):
        player = room.players[pid]
        player.role = role
        player.resources = role_resources(room.config, role)

    room.random_results["roles"] = {pid: role.value for pid, role in zip(player_ids, roles, strict=True)}
    _log(room, now=ctx.now, kind="start", message=f"Roles dealt to {len(player_ids)} players", actor_id=ctx.caller_id)
    return room


def acknowledge_reveal(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    _require_phase(gs, RoomPhase.revealing)
    if gs.reveal_acks.get(ctx.caller_id):
        return None
    gs.reveal_acks[ctx.caller_id] = True
    return room


def advance_after_all_acked(room: Room, ctx: RuleContext) -> Room | None:
    _require_host(room, ctx.caller_id, "begin play")
    gs = room.game_state
    if gs.phase != RoomPhase.revealing:
        return None
    player_ids = list(room.players)
    if not player_ids or not all(gs.reveal_acks.get(pid) for pid in player_ids):
        return None

    order = list(player_ids)
    ctx.rng.shuffle(order)
    room.random_results["player_order"] = list(order)

    apply_phase_event(gs, "all_revealed")
    gs.player_order = order
    gs.current_player_index = 0
    gs.subphase = Subphase.gm_stage
    gs.reveal_acks = {}
    gs.pending_failure = None
    gs.current_stage = None
    gs.wolf_decision_player_id = None
    gs.wolf_action_request = None
    _log(room, now=ctx.now, kind="play", message="Play order: " + ", ".join(_name(room, p) for p in order))
    return room


# --- turn flow -------------------------------------------------------------


def select_stage(room: Room, ctx: RuleContext) -> Room:
    _require_host(room, ctx.caller_id, "draw the stage")
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    if gs.discussion_phase:
        raise PreconditionError("Discussion is still running")

    cfg = room.config
    chapter = ctx.rng.randint(cfg.stage_min_chapter, cfg.stage_max_chapter)
    number = ctx.rng.randint(1, cfg.stages_per_chapter)
    stage = f"{chapter}-{number}"

    apply_subphase_event(gs, "stage_selected")
    gs.current_stage = stage
    room.random_results[f"stage_t{gs.turn}"] = stage
    _log(room, now=ctx.now, kind="stage", message=f"Turn {gs.turn} stage: {stage}", actor_id=ctx.caller_id)
    return room


def open_challenge(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    if ctx.caller_id != room.config.created_by and ctx.caller_id != current_player_id(gs):
        raise AuthorizationError("Only the host or the current player can open the challenge")
    if gs.phase != RoomPhase.playing or gs.subphase != Subphase.challenge_start:
        return None

    if wolf_can_act(room):
        wolf = find_role(room, Role.wolf)
        apply_subphase_event(gs, "open_with_sabotage")
        gs.wolf_decision_player_id = wolf.player_id if wolf is not None else None
    else:
        apply_subphase_event(gs, "open_without_sabotage")
    return room


def _apply_sabotage(room: Room, ctx: RuleContext, *, wolf: PlayerState, spec: WolfActionSpec, outcome: str | None) -> None:
    gs = room.game_state
    if spec.disables_doctor:
        doctor = find_role(room, Role.doctor)
        if doctor is not None:
            doctor.resources.doctor_punch_available_this_turn = False

    gs.last_sabotage = SabotageNotice(
        seq=_next_seq(gs),
        player_id=wolf.player_id,
        action=spec.name,
        outcome=outcome,
        turn=gs.turn,
    )
    gs.wolf_decision_player_id = None
    gs.wolf_action_request = None
    detail = f" ({outcome})" if outcome else ""
    _log(room, now=ctx.now, kind="sabotage", message=f"Sabotage '{spec.name}'{detail} was activated", actor_id=ctx.caller_id)


def activate_wolf_sabotage(room: Room, ctx: RuleContext, *, action: str) -> Room:
    wolf = _require_role(room, ctx.caller_id, Role.wolf)
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    _require_subphase(gs, Subphase.wolf_decision)

    spec = wolf_action_spec(room.config, action)
    remaining = wolf.resources.wolf_actions_remaining
    if remaining <= 0 or remaining < spec.cost:
        raise PreconditionError(f"Insufficient sabotage charges: need {spec.cost}, have {remaining}")
    wolf.resources.wolf_actions_remaining = remaining - spec.cost

    if spec.roulette_options:
        apply_subphase_event(gs, "sabotage_requested")
        gs.wolf_decision_player_id = None
        gs.wolf_action_request = WolfActionRequest(
            player_id=wolf.player_id,
            action=spec.name,
            roulette_options=list(spec.roulette_options),
            turn=gs.turn,
        )
        return room

    _apply_sabotage(room, ctx, wolf=wolf, spec=spec, outcome=None)
    apply_subphase_event(gs, "sabotage_settled")
    return room


def resolve_wolf_sabotage(room: Room, ctx: RuleContext) -> Room:
    wolf = _require_role(room, ctx.caller_id, Role.wolf)
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    _require_subphase(gs, Subphase.wolf_resolving)

    req = gs.wolf_action_request
    if req is None:
        raise PreconditionError("No sabotage is waiting to be resolved")
    if req.player_id != wolf.player_id:
        raise AuthorizationError("Sabotage was requested by another player")

    outcome = ctx.rng.choice(req.roulette_options)
    room.random_results[f"sabotage_t{gs.turn}_p{gs.current_player_index}"] = {"action": req.action, "outcome": outcome}

    spec = wolf_action_spec(room.config, req.action)
    _apply_sabotage(room, ctx, wolf=wolf, spec=spec, outcome=outcome)
    apply_subphase_event(gs, "sabotage_settled")
    return room


def skip_wolf_sabotage(room: Room, ctx: RuleContext) -> Room:
    _require_role(room, ctx.caller_id, Role.wolf)
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    _require_subphase(gs, Subphase.wolf_decision)
    apply_subphase_event(gs, "sabotage_settled")
    gs.wolf_decision_player_id = None
    gs.wolf_action_request = None
    return room


def record_challenge_success(room: Room, ctx: RuleContext) -> Room:
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    _require_current_player(room, ctx.caller_id)
    if gs.pending_failure is not None:
        raise PreconditionError("A failure is waiting for the doctor")
    _require_subphase(gs, Subphase.await_result)

    gs.white_stars += 1
    _commit_star(room, ctx, outcome=ChallengeOutcome.success, player_id=ctx.caller_id)
    return room


def record_challenge_failure(room: Room, ctx: RuleContext) -> Room:
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    _require_current_player(room, ctx.caller_id)
    if gs.pending_failure is not None:
        raise PreconditionError("A failure is already waiting for the doctor")
    _require_subphase(gs, Subphase.await_result)

    doctor = find_role(room, Role.doctor)
    if doctor is not None and doctor.player_id == ctx.caller_id:
        # Recorded even if the punch later cancels it.
        gs.doctor_has_failed = True

    if (
        doctor is not None
        and doctor.resources.doctor_punch_remaining > 0
        and doctor.resources.doctor_punch_available_this_turn
    ):
        apply_subphase_event(gs, "failure_deferred")
        gs.pending_failure = PendingFailure(player_id=ctx.caller_id)
        _log(
            room,
            now=ctx.now,
            kind="fail_pending",
            message=f"{_name(room, ctx.caller_id)} failed; waiting for the doctor",
            actor_id=ctx.caller_id,
            player_id=ctx.caller_id,
        )
        return room

    gs.black_stars += 1
    _commit_star(room, ctx, outcome=ChallengeOutcome.failure, player_id=ctx.caller_id)
    return room


def resolve_doctor_intervention(room: Room, ctx: RuleContext) -> Room:
    doctor = _require_role(room, ctx.caller_id, Role.doctor)
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    pending = gs.pending_failure
    if pending is None:
        raise PreconditionError("No failure is waiting for the doctor")
    res = doctor.resources
    if res.doctor_punch_remaining <= 0 or not res.doctor_punch_available_this_turn:
        raise PreconditionError("Doctor punch is not available")

    res.doctor_punch_remaining -= 1
    res.doctor_punch_available_this_turn = False

    # Negated failure: no star, turn unchanged, next player takes the same stage.
    apply_subphase_event(gs, "failure_negated")
    gs.pending_failure = None
    _advance_index(gs)
    gs.last_result = ChallengeResult(
        seq=_next_seq(gs),
        outcome=ChallengeOutcome.negated,
        player_id=pending.player_id,
        turn=gs.turn,
    )
    _log(
        room,
        now=ctx.now,
        kind="doctor_punch",
        message=f"Doctor punch! {_name(room, pending.player_id)}'s failure never happened",
        actor_id=ctx.caller_id,
        player_id=pending.player_id,
    )
    return room


def skip_doctor_intervention(room: Room, ctx: RuleContext) -> Room:
    _require_role(room, ctx.caller_id, Role.doctor)
    gs = room.game_state
    _require_phase(gs, RoomPhase.playing)
    pending = gs.pending_failure
    if pending is None:
        raise PreconditionError("No failure is waiting for the doctor")

    gs.black_stars += 1
    _commit_star(room, ctx, outcome=ChallengeOutcome.failure, player_id=pending.player_id)
    return room


def proceed_after_doctor_punch(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    if gs.phase != RoomPhase.playing or gs.subphase != Subphase.await_doctor_punch_result:
        return None
    apply_subphase_event(gs, "proceed")
    gs.wolf_decision_player_id = None
    gs.wolf_action_request = None
    return room


def _commit_star(room: Room, ctx: RuleContext, *, outcome: ChallengeOutcome, player_id: str) -> None:
    gs = room.game_state
    played_turn = gs.turn

    apply_subphase_event(gs, "star_committed")
    completed = gs.white_stars + gs.black_stars
    gs.turn = min(gs.max_turns, completed + 1)
    _advance_index(gs)
    gs.pending_failure = None
    gs.wolf_action_request = None
    gs.wolf_decision_player_id = None
    gs.current_stage = None
    _restore_doctor(room)

    gs.last_result = ChallengeResult(seq=_next_seq(gs), outcome=outcome, player_id=player_id, turn=played_turn)
    star = "white" if outcome == ChallengeOutcome.success else "black"
    _log(
        room,
        now=ctx.now,
        kind=outcome.value,
        message=f"Turn {played_turn}: {_name(room, player_id)} -> {star} star ({gs.white_stars}-{gs.black_stars})",
        actor_id=ctx.caller_id,
        player_id=player_id,
    )

    doctor = find_role(room, Role.doctor)
    needed = majority(gs.max_turns)
    if outcome == ChallengeOutcome.failure and doctor is not None and doctor.player_id == player_id:
        _finish(room, ctx, GameResult.wolf_win, reason="the doctor failed")
    elif gs.white_stars >= needed:
        _finish(room, ctx, GameResult.citizen_win, reason="white stars reached a majority")
    elif gs.black_stars >= needed or (completed >= gs.max_turns and gs.black_stars > gs.white_stars):
        if gs.doctor_has_failed:
            _finish(room, ctx, GameResult.wolf_win, reason="black stars won and the doctor had failed")
        else:
            _enter_final_phase(room, ctx)
    elif completed >= gs.max_turns:
        _finish(room, ctx, GameResult.citizen_win, reason="all turns played without a black majority")
    elif room.config.discussion_seconds > 0:
        gs.discussion_phase = True
        gs.discussion_end_time = ctx.now + timedelta(seconds=room.config.discussion_seconds)


def _clear_turn_state(gs: GameState) -> None:
    gs.subphase = None
    gs.pending_failure = None
    gs.wolf_action_request = None
    gs.wolf_decision_player_id = None
    gs.current_stage = None
    gs.discussion_phase = False
    gs.discussion_end_time = None


def _finish(room: Room, ctx: RuleContext, result: GameResult, *, reason: str) -> None:
    gs = room.game_state
    apply_phase_event(gs, "decide")
    _clear_turn_state(gs)
    gs.final_phase_discussion_end_time = None
    gs.game_result = result
    _log(room, now=ctx.now, kind="finished", message=f"{result.value}: {reason}")


def _enter_final_phase(room: Room, ctx: RuleContext) -> None:
    gs = room.game_state
    apply_phase_event(gs, "enter_final_phase")
    _clear_turn_state(gs)
    gs.final_phase_votes = {}
    gs.final_phase_vote_counts = {}
    gs.final_phase_discussion_end_time = ctx.now + timedelta(seconds=room.config.final_discussion_seconds)
    _log(room, now=ctx.now, kind="final_phase", message="Final phase: name the wolf")


# --- discussion ------------------------------------------------------------


def end_discussion(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    if not gs.discussion_phase:
        return None
    is_host = ctx.caller_id == room.config.created_by
    if not is_host and (gs.discussion_end_time is None or ctx.now < gs.discussion_end_time):
        raise PreconditionError("Discussion time is not over yet")
    gs.discussion_phase = False
    gs.discussion_end_time = None
    _log(room, now=ctx.now, kind="discussion_end", message="Discussion ended", actor_id=ctx.caller_id)
    return room


def extend_discussion(room: Room, ctx: RuleContext) -> Room:
    _require_host(room, ctx.caller_id, "extend the discussion")
    gs = room.game_state
    if not gs.discussion_phase:
        raise PreconditionError("Discussion phase is not active")
    base = gs.discussion_end_time or ctx.now
    gs.discussion_end_time = base + timedelta(seconds=room.config.discussion_extension_seconds)
    return room


# --- final phase -----------------------------------------------------------


def final_voters(room: Room) -> list[str]:
    """Doctor and citizens vote; the wolf does not."""

    return [pid for pid, p in room.players.items() if p.role is not None and p.role != Role.wolf]


def submit_final_vote(room: Room, ctx: RuleContext, *, accused_id: str) -> Room | None:
    voter = _require_player(room, ctx.caller_id)
    gs = room.game_state
    _require_phase(gs, RoomPhase.final_phase)
    if voter.role == Role.wolf:
        raise AuthorizationError("The wolf does not vote in the final phase")
    if accused_id not in room.players:
        raise PreconditionError("Accused player is not in this room")
    if gs.final_phase_votes.get(ctx.caller_id) == accused_id:
        return None
    gs.final_phase_votes[ctx.caller_id] = accused_id
    return room


def tally(votes: dict[str, str], players: dict[str, PlayerState]) -> tuple[dict[str, int], GameResult]:
    """Unique plurality leader who is the wolf => good faction wins; anything else => wolf wins."""

    counts = dict(Counter(votes.values()))
    if not counts:
        return counts, GameResult.wolf_win
    top = max(counts.values())
    leaders = [pid for pid, n in counts.items() if n == top]
    if len(leaders) == 1:
        accused = players.get(leaders[0])
        if accused is not None and accused.role == Role.wolf:
            return counts, GameResult.citizen_win_reverse
    return counts, GameResult.wolf_win


def _settle_vote(room: Room, ctx: RuleContext) -> Room:
    gs = room.game_state
    counts, result = tally(gs.final_phase_votes, room.players)
    gs.final_phase_vote_counts = counts
    _finish(room, ctx, result, reason=f"final vote {counts}")
    return room


def tally_final_votes(room: Room, ctx: RuleContext) -> Room:
    _require_host(room, ctx.caller_id, "close the vote")
    gs = room.game_state
    _require_phase(gs, RoomPhase.final_phase)
    missing = [pid for pid in final_voters(room) if pid not in gs.final_phase_votes]
    if missing:
        raise PreconditionError(f"Still waiting for {len(missing)} vote(s)")
    return _settle_vote(room, ctx)


def expire_final_discussion(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    if gs.phase != RoomPhase.final_phase:
        return None
    deadline = gs.final_phase_discussion_end_time
    if deadline is None or ctx.now < deadline:
        raise PreconditionError("Final discussion time is not over yet")
    return _settle_vote(room, ctx)


# --- back to the lobby -----------------------------------------------------


def reset_to_lobby(room: Room, ctx: RuleContext) -> Room | None:
    _require_player(room, ctx.caller_id)
    gs = room.game_state
    acks = gs.result_return_lobby_acks

    if gs.phase == RoomPhase.finished and not acks:
        fresh = fresh_game_state(room.config, event_seq=gs.event_seq)
        fresh.phase = gs.phase
        apply_phase_event(fresh, "return_to_lobby")
        fresh.result_return_lobby_acks = {ctx.caller_id: True}
        room.game_state = fresh
        for player in room.players.values():
            player.role = None
            player.resources = lobby_resources(room.config)
        _log(room, now=ctx.now, kind="lobby", message="Back to the lobby", actor_id=ctx.caller_id)
        return room

    if gs.phase != RoomPhase.waiting or not acks:
        raise PreconditionError(f"Nothing to return from (phase: {gs.phase.value})")
    if acks.get(ctx.caller_id):
        return None
    acks[ctx.caller_id] = True
    return room


# --- invariants ------------------------------------------------------------


def invariant_violations(room: Room) -> list[str]:
    gs = room.game_state
    problems: list[str] = []
    player_ids = set(room.players)

    if gs.phase != RoomPhase.waiting:
        roles = [p.role for p in room.players.values()]
        if roles.count(Role.wolf) != 1:
            problems.append(f"expected exactly one wolf, found {roles.count(Role.wolf)}")
        if len(roles) >= MIN_PLAYERS and roles.count(Role.doctor) != 1:
            problems.append(f"expected exactly one doctor, found {roles.count(Role.doctor)}")

    if gs.white_stars + gs.black_stars > gs.max_turns:
        problems.append("stars exceed max_turns")

    if gs.player_order is not None and not 0 <= gs.current_player_index < len(gs.player_order):
        problems.append("current_player_index out of range")

    if gs.pending_failure is not None and gs.subphase != Subphase.await_doctor:
        problems.append("pending_failure outside await_doctor")

    if not set(gs.reveal_acks) <= player_ids:
        problems.append("reveal_acks references unknown players")

    if gs.wolf_action_request is not None and gs.pending_failure is not None:
        problems.append("sabotage in flight while a doctor decision is pending")

    return problems
