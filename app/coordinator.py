from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal

import pydantic

from app import game_rules
from app.api.models import JoinRequest, Room, RoomOptions
from app.errors import ConflictError, ValidationError
from app.game_rules import RuleContext
from app.room_store import RoomStore
from app.streams import SnapshotHandler, Subscription

logger = logging.getLogger(__name__)


ActionName = Literal[
    "start_game",
    "acknowledge_reveal",
    "advance_after_all_acked",
    "select_stage",
    "open_challenge",
    "activate_wolf_sabotage",
    "resolve_wolf_sabotage",
    "skip_wolf_sabotage",
    "record_challenge_success",
    "record_challenge_failure",
    "resolve_doctor_intervention",
    "skip_doctor_intervention",
    "proceed_after_doctor_punch",
    "end_discussion",
    "extend_discussion",
    "submit_final_vote",
    "tally_final_votes",
    "expire_final_discussion",
    "reset_to_lobby",
]

Rule = Callable[..., Room | None]


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _validation_message(e: pydantic.ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors())


class GameCoordinator:
    """Single entry point for every state-changing request.

    Each operation is exactly one RoomStore transaction: the rule in app.game_rules
    runs against a fresh read, and either all of its changes commit or none do.
    Callers may be any player; identity and role are checked inside the rule.
    """

    def __init__(
        self,
        *,
        store: RoomStore,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self.clock = clock

    # --- reads -----------------------------------------------------------

    def get_room(self, room_id: str) -> Room:
        return self.store.require(room_id)

    def subscribe(self, room_id: str, on_snapshot: SnapshotHandler, *, threaded: bool = False) -> Subscription:
        self.store.require(room_id)
        return self.store.subscribe(room_id, on_snapshot, threaded=threaded)

    # --- plumbing --------------------------------------------------------

    def _run(self, room_id: str, caller_id: str, rule: Rule, **kwargs: Any) -> Room:
        if not caller_id:
            raise ValidationError("Missing player id")

        def mutation(room: Room) -> Room | None:
            ctx = RuleContext(caller_id=caller_id, now=self.clock(), rng=self.rng)
            updated = rule(room, ctx, **kwargs)
            if updated is not None:
                problems = game_rules.invariant_violations(updated)
                if problems:
                    raise RuntimeError(f"{rule.__name__} would break room invariants: {problems}")
            return updated

        try:
            return self.store.transact(room_id, mutation)
        except ConflictError:
            logger.warning("room %s: %s gave up after repeated conflicts", room_id, rule.__name__)
            return self.store.require(room_id)

    # --- lobby -----------------------------------------------------------

    def create_room(self, *, host_id: str, options: RoomOptions | dict[str, Any] | None = None) -> Room:
        if not host_id:
            raise ValidationError("Missing player id")
        if not isinstance(options, RoomOptions):
            try:
                options = RoomOptions.model_validate(options or {})
            except pydantic.ValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        room_id = game_rules.generate_room_id(self.rng)
        room = game_rules.new_room(room_id=room_id, host_id=host_id, options=options, now=self.clock())
        room = self.store.create(room)
        logger.info("room %s created by %s", room_id, host_id)
        return room

    def join_room(self, room_id: str, caller_id: str, *, name: str) -> Room:
        try:
            req = JoinRequest(name=name)
        except pydantic.ValidationError as e:
            raise ValidationError(_validation_message(e)) from e
        return self._run(room_id, caller_id, game_rules.join_room, name=req.name)

    def start_game(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.start_game)

    def acknowledge_reveal(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.acknowledge_reveal)

    def advance_after_all_acked(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.advance_after_all_acked)

    def reset_to_lobby(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.reset_to_lobby)

    # --- turn flow -------------------------------------------------------

    def select_stage(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.select_stage)

    def open_challenge(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.open_challenge)

    def activate_wolf_sabotage(self, room_id: str, caller_id: str, *, action: str) -> Room:
        if not isinstance(action, str) or not action:
            raise ValidationError("Sabotage name is required")
        # Config never changes after creation, so the name can be checked outside the transaction.
        game_rules.wolf_action_spec(self.store.require(room_id).config, action)
        return self._run(room_id, caller_id, game_rules.activate_wolf_sabotage, action=action)

    def resolve_wolf_sabotage(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.resolve_wolf_sabotage)

    def skip_wolf_sabotage(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.skip_wolf_sabotage)

    def record_challenge_success(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.record_challenge_success)

    def record_challenge_failure(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.record_challenge_failure)

    def resolve_doctor_intervention(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.resolve_doctor_intervention)

    def skip_doctor_intervention(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.skip_doctor_intervention)

    def proceed_after_doctor_punch(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.proceed_after_doctor_punch)

    # --- discussion & final phase ----------------------------------------

    def end_discussion(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.end_discussion)

    def extend_discussion(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.extend_discussion)

    def submit_final_vote(self, room_id: str, caller_id: str, *, accused_id: str) -> Room:
        if not isinstance(accused_id, str) or not accused_id:
            raise ValidationError("accused_id is required")
        return self._run(room_id, caller_id, game_rules.submit_final_vote, accused_id=accused_id)

    def tally_final_votes(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.tally_final_votes)

    def expire_final_discussion(self, room_id: str, caller_id: str) -> Room:
        return self._run(room_id, caller_id, game_rules.expire_final_discussion)

    # --- generic entry point ---------------------------------------------

    def dispatch(self, room_id: str, caller_id: str, action: str, payload: dict[str, Any] | None = None) -> Room:
        """Entry point for the HTTP action route and for scheduled continuations."""

        payload = payload or {}
        if action == "activate_wolf_sabotage":
            return self.activate_wolf_sabotage(room_id, caller_id, action=payload.get("action"))  # type: ignore[arg-type]
        if action == "submit_final_vote":
            return self.submit_final_vote(room_id, caller_id, accused_id=payload.get("accused_id"))  # type: ignore[arg-type]
        if action == "join_room":
            return self.join_room(room_id, caller_id, name=str(payload.get("name", "")))

        handler = _SIMPLE_ACTIONS.get(action)
        if handler is None:
            raise ValidationError(f"Unknown action: {action}")
        return handler(self, room_id, caller_id)


_SIMPLE_ACTIONS: dict[str, Callable[[GameCoordinator, str, str], Room]] = {
    "start_game": GameCoordinator.start_game,
    "acknowledge_reveal": GameCoordinator.acknowledge_reveal,
    "advance_after_all_acked": GameCoordinator.advance_after_all_acked,
    "select_stage": GameCoordinator.select_stage,
    "open_challenge": GameCoordinator.open_challenge,
    "resolve_wolf_sabotage": GameCoordinator.resolve_wolf_sabotage,
    "skip_wolf_sabotage": GameCoordinator.skip_wolf_sabotage,
    "record_challenge_success": GameCoordinator.record_challenge_success,
    "record_challenge_failure": GameCoordinator.record_challenge_failure,
    "resolve_doctor_intervention": GameCoordinator.resolve_doctor_intervention,
    "skip_doctor_intervention": GameCoordinator.skip_doctor_intervention,
    "proceed_after_doctor_punch": GameCoordinator.proceed_after_doctor_punch,
    "end_discussion": GameCoordinator.end_discussion,
    "extend_discussion": GameCoordinator.extend_discussion,
    "tally_final_votes": GameCoordinator.tally_final_votes,
    "expire_final_discussion": GameCoordinator.expire_final_discussion,
    "reset_to_lobby": GameCoordinator.reset_to_lobby,
}
