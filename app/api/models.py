from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RoomPhase(StrEnum):
    waiting = "waiting"
    revealing = "revealing"
    playing = "playing"
    final_phase = "final_phase"
    finished = "finished"


class Subphase(StrEnum):
    gm_stage = "gm_stage"
    challenge_start = "challenge_start"
    wolf_decision = "wolf_decision"
    wolf_resolving = "wolf_resolving"
    await_result = "await_result"
    await_doctor = "await_doctor"
    await_doctor_punch_result = "await_doctor_punch_result"


class Role(StrEnum):
    wolf = "wolf"
    doctor = "doctor"
    citizen = "citizen"


class GameResult(StrEnum):
    citizen_win = "citizen_win"
    # Good faction named the wolf in the final vote.
    citizen_win_reverse = "citizen_win_reverse"
    wolf_win = "wolf_win"


class ChallengeOutcome(StrEnum):
    success = "success"
    failure = "failure"
    # Failure cancelled by the doctor's punch.
    negated = "negated"


class WolfActionSpec(BaseModel):
    name: str = Field(..., min_length=1, max_length=40)
    cost: int = Field(..., ge=1, le=1000)
    description: str = ""

    # Non-empty => the sabotage needs a random draw while in wolf_resolving.
    roulette_options: list[str] = Field(default_factory=list)

    # Doctor punch unavailable until the next committed challenge.
    disables_doctor: bool = False


OPERATOR_CLASSES = ["vanguard", "guard", "defender", "sniper", "caster", "medic", "supporter", "specialist"]


def default_wolf_actions() -> list[WolfActionSpec]:
    return [
        WolfActionSpec(name="assault", cost=20, description="The stage must be cleared as an assault operation."),
        WolfActionSpec(name="jamming", cost=15, description="Modules may not be used."),
        WolfActionSpec(
            name="maintenance_failure",
            cost=10,
            description="One random operator class may not be deployed.",
            roulette_options=list(OPERATOR_CLASSES),
        ),
        WolfActionSpec(
            name="last_stand",
            cost=30,
            description="The doctor cannot punch until the next challenge is settled.",
            disables_doctor=True,
        ),
        WolfActionSpec(name="supply_cut", cost=15, description="Redeployment is forbidden."),
        WolfActionSpec(name="sabotage", cost=10, description="Manual skills may not be used."),
        WolfActionSpec(name="target_ban", cost=15, description="One named operator may not be used."),
    ]


class RoomOptions(BaseModel):
    """Host-chosen options. Validated before anything touches the store."""

    host_name: str = Field("Host", min_length=1, max_length=32)
    max_turns: int = Field(5, ge=1, le=15)
    wolf_initial_cost: int = Field(100, ge=1, le=1000)
    doctor_punch_count: int = Field(5, ge=0, le=20)

    discussion_seconds: int = Field(300, ge=0, le=3600)
    final_discussion_seconds: int = Field(600, ge=0, le=3600)
    discussion_extension_seconds: int = Field(120, ge=1, le=3600)

    stage_min_chapter: int = Field(2, ge=0, le=15)
    stage_max_chapter: int = Field(5, ge=0, le=15)
    stages_per_chapter: int = Field(10, ge=1, le=20)

    wolf_actions: list[WolfActionSpec] = Field(default_factory=default_wolf_actions)

    @model_validator(mode="after")
    def _check_ranges(self) -> "RoomOptions":
        if self.stage_min_chapter > self.stage_max_chapter:
            raise ValueError("stage_min_chapter must not exceed stage_max_chapter")
        names = [a.name for a in self.wolf_actions]
        if len(names) != len(set(names)):
            raise ValueError("wolf action names must be unique")
        return self


class RoomConfig(RoomOptions):
    model_config = ConfigDict(frozen=True)

    room_id: str
    created_by: str
    created_at: datetime


class PlayerResources(BaseModel):
    wolf_actions_remaining: int = 0
    doctor_punch_remaining: int = 0
    doctor_punch_available_this_turn: bool = True


class PlayerState(BaseModel):
    player_id: str
    name: str
    avatar_letter: str = "?"
    role: Role | None = None
    resources: PlayerResources = Field(default_factory=PlayerResources)

    # Informational only: authorization compares against config.created_by.
    is_host: bool = False

    joined_at: datetime


class PendingFailure(BaseModel):
    player_id: str


class WolfActionRequest(BaseModel):
    player_id: str
    action: str
    roulette_options: list[str] = Field(default_factory=list)
    turn: int


class ChallengeResult(BaseModel):
    seq: int
    outcome: ChallengeOutcome
    player_id: str
    turn: int


class SabotageNotice(BaseModel):
    seq: int
    player_id: str
    action: str
    outcome: str | None = None
    turn: int


class LogEntry(BaseModel):
    seq: int
    kind: str
    message: str
    actor_id: str | None = None
    player_id: str | None = None
    ts: datetime


class GameState(BaseModel):
    phase: RoomPhase = RoomPhase.waiting

    # Only meaningful while phase == playing.
    subphase: Subphase | None = None

    turn: int = 1
    max_turns: int = 5
    white_stars: int = 0
    black_stars: int = 0

    player_order: list[str] | None = None
    current_player_index: int = 0
    current_stage: str | None = None

    pending_failure: PendingFailure | None = None
    doctor_has_failed: bool = False

    # Scoped to the revealing phase.
    reveal_acks: dict[str, bool] = Field(default_factory=dict)

    wolf_decision_player_id: str | None = None
    wolf_action_request: WolfActionRequest | None = None

    discussion_phase: bool = False
    discussion_end_time: datetime | None = None

    final_phase_votes: dict[str, str] = Field(default_factory=dict)
    final_phase_vote_counts: dict[str, int] = Field(default_factory=dict)
    final_phase_discussion_end_time: datetime | None = None

    game_result: GameResult | None = None
    result_return_lobby_acks: dict[str, bool] = Field(default_factory=dict)

    # Announcement payloads; seq comes from event_seq so replays are detectable.
    event_seq: int = 0
    last_result: ChallengeResult | None = None
    last_sabotage: SabotageNotice | None = None


class Room(BaseModel):
    room_id: str
    config: RoomConfig
    game_state: GameState = Field(default_factory=GameState)

    # Insertion order == join order.
    players: dict[str, PlayerState] = Field(default_factory=dict)

    logs: list[LogEntry] = Field(default_factory=list)

    # Audit trail of every randomized outcome.
    random_results: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime
    last_updated_at: datetime

    # Bumped by every committed transaction.
    version: int = 0


class RoomCreateRequest(RoomOptions):
    pass


class JoinRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)


class ActionResponse(BaseModel):
    action: str
    room: Room
