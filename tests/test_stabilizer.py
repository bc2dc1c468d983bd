import pytest

from handsfree.config import StabilizerConfig
from handsfree.models import GestureLabel
from handsfree.stabilizer import GestureStabilizer

UP = GestureLabel.THUMBS_UP
DOWN = GestureLabel.THUMBS_DOWN


@pytest.fixture
def stab(scheduler):
    return GestureStabilizer(scheduler, StabilizerConfig())


def test_first_sighting_dispatches(stab):
    assert stab.observe(UP) is UP
    assert stab.state == "cooldown"


def test_held_gesture_dispatches_once_per_cooldown(stab, scheduler):
    fired = []
    for _ in range(45):  # 1.5 s at 30 Hz
        result = stab.observe(UP)
        if result:
            fired.append((scheduler.now, result))
        scheduler.advance(1 / 30)
    assert len(fired) == 1

    # window is over, the same gesture may fire again
    scheduler.advance(0.1)
    assert stab.observe(UP) is UP


def test_other_gesture_during_cooldown_is_dropped(stab, scheduler):
    stab.observe(UP)
    scheduler.advance(0.5)
    assert stab.observe(DOWN) is None
    scheduler.advance(1.0)
    assert stab.observe(DOWN) is DOWN


def test_hold_frames_threshold(scheduler):
    stab = GestureStabilizer(scheduler, StabilizerConfig(hold_frames=3))
    assert stab.observe(UP) is None
    assert stab.state == "holding"
    assert stab.observe(UP) is None
    assert stab.observe(UP) is UP


def test_label_change_restarts_hold(scheduler):
    stab = GestureStabilizer(scheduler, StabilizerConfig(hold_frames=2))
    assert stab.observe(UP) is None
    assert stab.observe(DOWN) is None
    assert stab.observe(DOWN) is DOWN


def test_none_label_leaves_session_alone(scheduler):
    stab = GestureStabilizer(scheduler, StabilizerConfig(hold_frames=3))
    stab.observe(UP)
    stab.observe(UP)
    assert stab.observe(GestureLabel.NONE) is None
    assert stab.session.hold_count == 2
    assert stab.observe(UP) is UP


def test_absent_hand_resets_session_after_grace(scheduler):
    stab = GestureStabilizer(scheduler, StabilizerConfig(hold_frames=2))
    stab.observe(UP)
    stab.observe_absent()
    scheduler.advance(1.0)
    assert stab.session.last_label is None
    assert stab.state == "idle"


def test_absent_timer_armed_once(stab, scheduler):
    stab.observe(UP)
    for _ in range(10):
        stab.observe_absent()
        scheduler.advance(0.05)
    assert len(scheduler.pending("gesture_absent_grace")) == 1


def test_hand_back_within_grace_keeps_session(scheduler):
    stab = GestureStabilizer(scheduler, StabilizerConfig(hold_frames=3))
    stab.observe(UP)
    stab.observe_absent()
    scheduler.advance(0.5)
    stab.observe(UP)
    scheduler.advance(1.0)
    assert stab.session.last_label is UP
    assert not scheduler.pending("gesture_absent_grace")


def test_absent_reset_keeps_cooldown_running(stab, scheduler):
    stab.observe(UP)
    stab.observe_absent()
    scheduler.advance(1.0)
    assert stab.session.cooldown_active
    assert stab.observe(UP) is None
    scheduler.advance(0.5)
    assert stab.observe(UP) is UP


def test_absent_on_empty_session_arms_nothing(stab, scheduler):
    stab.observe_absent()
    assert not scheduler.pending()


def test_reset_cancels_timers(stab, scheduler):
    stab.observe(UP)
    stab.observe_absent()
    stab.reset()
    assert not scheduler.pending()
    assert stab.state == "idle"
    assert stab.observe(UP) is UP
