from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.errors import GameError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Continuation:
    """A coordinator call to run once the effect carrying it is dismissed."""

    room_id: str
    action: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Effect:
    key: Hashable
    kind: str
    message: str
    requires_ack: bool = False

    # Seconds until auto-dismiss; ignored when requires_ack is set.
    dismiss_after: float = 3.0

    continuation: Continuation | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Indicator:
    kind: str
    message: str


class Presenter(Protocol):
    def show(self, effect: Effect) -> None: ...

    def hide(self, effect: Effect) -> None: ...

    def show_indicator(self, indicator: Indicator) -> None: ...

    def hide_indicator(self, indicator: Indicator) -> None: ...


class LogPresenter:
    """Headless presenter: every visibility change becomes a log line."""

    def show(self, effect: Effect) -> None:
        logger.info("show %s: %s", effect.kind, effect.message)

    def hide(self, effect: Effect) -> None:
        logger.debug("hide %s", effect.kind)

    def show_indicator(self, indicator: Indicator) -> None:
        logger.info("indicator %s: %s", indicator.kind, indicator.message)

    def hide_indicator(self, indicator: Indicator) -> None:
        logger.debug("indicator hidden %s", indicator.kind)


Dispatcher = Callable[[Continuation], object]


class EffectScheduler:
    """Shows discrete effects one at a time, in arrival order.

    A continuous indicator sits underneath: it is visible only while no discrete
    effect is showing or queued, and an arriving effect hides it. Dismissing an
    effect (ack or timeout) hands its continuation to the dispatcher before the
    next effect is shown.
    """

    def __init__(
        self,
        *,
        presenter: Presenter | None = None,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.presenter = presenter or LogPresenter()
        self.dispatcher = dispatcher
        self._clock = clock

        self._queue: deque[Effect] = deque()
        self.visible: Effect | None = None
        self._shown_at = 0.0

        self.indicator: Indicator | None = None
        self.indicator_visible = False

    @property
    def pending(self) -> list[Effect]:
        return list(self._queue)

    @property
    def idle(self) -> bool:
        return self.visible is None and not self._queue

    def enqueue(self, effect: Effect) -> None:
        self._queue.append(effect)
        self._hide_indicator()
        self._drain()

    def set_indicator(self, indicator: Indicator | None) -> None:
        if indicator == self.indicator:
            return
        self._hide_indicator()
        self.indicator = indicator
        self._drain()

    def acknowledge(self, key: Hashable | None = None) -> bool:
        """Dismiss the visible effect (only if it matches `key`, when given)."""

        if self.visible is None:
            return False
        if key is not None and self.visible.key != key:
            return False
        self._dismiss()
        return True

    def tick(self, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        # Bounded by the queue length: each pass dismisses one effect.
        while self.visible is not None and not self.visible.requires_ack:
            if now - self._shown_at < self.visible.dismiss_after:
                return
            self._dismiss(now=now)

    def dispatch(self, continuation: Continuation) -> None:
        if self.dispatcher is None:
            logger.debug("no dispatcher; dropping %s", continuation.action)
            return
        try:
            self.dispatcher(continuation)
        except GameError as e:
            # Usually another client got there first.
            logger.info("continuation %s for room %s rejected: %s", continuation.action, continuation.room_id, e)

    def clear(self) -> None:
        if self.visible is not None:
            self.presenter.hide(self.visible)
        self.visible = None
        self._queue.clear()
        self._hide_indicator()
        self.indicator = None

    def _dismiss(self, *, now: float | None = None) -> None:
        effect = self.visible
        if effect is None:
            return
        self.visible = None
        self.presenter.hide(effect)
        try:
            if effect.continuation is not None:
                self.dispatch(effect.continuation)
        finally:
            self._drain(now=now)

    def _drain(self, *, now: float | None = None) -> None:
        if self.visible is None and self._queue:
            self.visible = self._queue.popleft()
            self._shown_at = self._clock() if now is None else now
            self.presenter.show(self.visible)
            return
        if self.idle and self.indicator is not None and not self.indicator_visible:
            self.indicator_visible = True
            self.presenter.show_indicator(self.indicator)

    def _hide_indicator(self) -> None:
        if self.indicator is not None and self.indicator_visible:
            self.indicator_visible = False
            self.presenter.hide_indicator(self.indicator)
