from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from app.api.models import Room
from app.coordinator import GameCoordinator
from app.effects import Continuation, EffectScheduler, Presenter
from app.reconcile import RoomReconciler, RoomView
from app.streams import Subscription

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class RoomClient:
    """One player's session: snapshots in, effects out, continuations back to the coordinator.

    Poll-driven: `poll()` drains pending snapshots, advances effect timers and fires
    expired countdowns. Everything runs on the caller's thread.
    """

    def __init__(
        self,
        *,
        coordinator: GameCoordinator,
        room_id: str,
        player_id: str,
        presenter: Presenter | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _now,
    ) -> None:
        self.coordinator = coordinator
        self.room_id = room_id
        self.player_id = player_id
        self._wall_clock = wall_clock
        self.scheduler = EffectScheduler(presenter=presenter, dispatcher=self._dispatch, clock=monotonic)
        self.reconciler = RoomReconciler(room_id=room_id, viewer_id=player_id, scheduler=self.scheduler)
        self._subscription: Subscription | None = None

    @property
    def view(self) -> RoomView | None:
        return self.reconciler.view

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.coordinator.subscribe(self.room_id, self._on_snapshot, threaded=False)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription()
            self._subscription = None

    def act(self, action: str, **payload: Any) -> Room:
        return self.coordinator.dispatch(self.room_id, self.player_id, action, payload)

    def poll(self, now: float | None = None) -> None:
        self._pump()
        self.scheduler.tick(now)
        for continuation in self.reconciler.check_deadlines(self._wall_clock()):
            self.scheduler.dispatch(continuation)
        self._pump()

    def _pump(self) -> None:
        if self._subscription is not None:
            self._subscription.pump()

    def _on_snapshot(self, room: Room) -> None:
        self.reconciler.reconcile(room)

    def _dispatch(self, continuation: Continuation) -> Room:
        logger.debug("player %s continues with %s", self.player_id, continuation.action)
        return self.coordinator.dispatch(continuation.room_id, self.player_id, continuation.action, continuation.payload)
