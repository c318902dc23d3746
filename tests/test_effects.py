from __future__ import annotations

import pytest

from app.effects import Continuation, Effect, EffectScheduler, Indicator
from app.errors import PreconditionError


class RecordingPresenter:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def show(self, effect: Effect) -> None:
        self.events.append(("show", effect.kind))

    def hide(self, effect: Effect) -> None:
        self.events.append(("hide", effect.kind))

    def show_indicator(self, indicator: Indicator) -> None:
        self.events.append(("show_indicator", indicator.kind))

    def hide_indicator(self, indicator: Indicator) -> None:
        self.events.append(("hide_indicator", indicator.kind))


class ManualClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture()
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture()
def dispatched() -> list[Continuation]:
    return []


@pytest.fixture()
def scheduler(presenter: RecordingPresenter, dispatched: list[Continuation]) -> EffectScheduler:
    return EffectScheduler(presenter=presenter, dispatcher=dispatched.append, clock=ManualClock())


def _effect(kind: str, **kwargs) -> Effect:  # type: ignore[no-untyped-def]
    return Effect(key=("R", 1, 0, kind), kind=kind, message=kind, **kwargs)


def test_effects_show_one_at_a_time_in_order(scheduler: EffectScheduler, presenter: RecordingPresenter) -> None:
    scheduler.enqueue(_effect("a", requires_ack=True))
    scheduler.enqueue(_effect("b", requires_ack=True))
    scheduler.enqueue(_effect("c", requires_ack=True))

    assert scheduler.visible is not None and scheduler.visible.kind == "a"
    assert [e.kind for e in scheduler.pending] == ["b", "c"]

    assert scheduler.acknowledge()
    assert scheduler.acknowledge()
    assert scheduler.acknowledge()
    assert not scheduler.acknowledge()

    assert presenter.events == [
        ("show", "a"),
        ("hide", "a"),
        ("show", "b"),
        ("hide", "b"),
        ("show", "c"),
        ("hide", "c"),
    ]


def test_ack_required_effect_ignores_timeouts(scheduler: EffectScheduler) -> None:
    scheduler.enqueue(_effect("role_reveal", requires_ack=True))
    scheduler.tick(now=1_000.0)
    assert scheduler.visible is not None


def test_acknowledge_with_the_wrong_key_does_nothing(scheduler: EffectScheduler) -> None:
    scheduler.enqueue(_effect("a", requires_ack=True))
    assert not scheduler.acknowledge(("R", 1, 0, "b"))
    assert scheduler.acknowledge(("R", 1, 0, "a"))


def test_auto_dismiss_after_delay(scheduler: EffectScheduler) -> None:
    scheduler.enqueue(_effect("a", dismiss_after=2.0))
    scheduler.enqueue(_effect("b", dismiss_after=2.0))

    scheduler.tick(now=1.0)
    assert scheduler.visible is not None and scheduler.visible.kind == "a"

    scheduler.tick(now=2.0)
    assert scheduler.visible is not None and scheduler.visible.kind == "b"

    scheduler.tick(now=3.9)
    assert scheduler.visible is not None and scheduler.visible.kind == "b"

    scheduler.tick(now=4.0)
    assert scheduler.visible is None


def test_continuation_dispatched_on_dismiss_before_next_effect(
    scheduler: EffectScheduler, presenter: RecordingPresenter, dispatched: list[Continuation]
) -> None:
    cont = Continuation(room_id="R", action="proceed_after_doctor_punch")
    scheduler.enqueue(_effect("result", continuation=cont, dismiss_after=1.0))
    scheduler.enqueue(_effect("next", requires_ack=True))

    assert dispatched == []
    scheduler.tick(now=1.0)
    assert dispatched == [cont]
    assert presenter.events[-1] == ("show", "next")


def test_rejected_continuation_is_logged_and_the_queue_moves_on(presenter: RecordingPresenter) -> None:
    def _lost_race(c: Continuation) -> None:
        raise PreconditionError("already advanced")

    scheduler = EffectScheduler(presenter=presenter, dispatcher=_lost_race, clock=ManualClock())
    scheduler.enqueue(_effect("a", requires_ack=True, continuation=Continuation(room_id="R", action="open_challenge")))
    scheduler.enqueue(_effect("b", requires_ack=True))

    assert scheduler.acknowledge()
    assert scheduler.visible is not None and scheduler.visible.kind == "b"


def test_indicator_only_when_idle_and_interrupted_by_effects(
    scheduler: EffectScheduler, presenter: RecordingPresenter
) -> None:
    waiting = Indicator(kind="doctor_deciding", message="...")
    scheduler.set_indicator(waiting)
    assert scheduler.indicator_visible
    assert presenter.events == [("show_indicator", "doctor_deciding")]

    scheduler.enqueue(_effect("a", requires_ack=True))
    assert not scheduler.indicator_visible
    assert presenter.events[-2:] == [("hide_indicator", "doctor_deciding"), ("show", "a")]

    # Same indicator again while busy: stays hidden.
    scheduler.set_indicator(waiting)
    assert not scheduler.indicator_visible

    scheduler.acknowledge()
    assert scheduler.indicator_visible
    assert presenter.events[-1] == ("show_indicator", "doctor_deciding")

    scheduler.set_indicator(None)
    assert not scheduler.indicator_visible
    assert presenter.events[-1] == ("hide_indicator", "doctor_deciding")


def test_indicator_set_while_busy_waits_for_the_queue(scheduler: EffectScheduler) -> None:
    scheduler.enqueue(_effect("a", requires_ack=True))
    scheduler.set_indicator(Indicator(kind="wolf_deciding", message="..."))
    assert not scheduler.indicator_visible
    scheduler.acknowledge()
    assert scheduler.indicator_visible


def test_clear_drops_everything(scheduler: EffectScheduler) -> None:
    scheduler.enqueue(_effect("a", requires_ack=True))
    scheduler.enqueue(_effect("b", requires_ack=True))
    scheduler.clear()
    assert scheduler.idle
    assert scheduler.indicator is None
