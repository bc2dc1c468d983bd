import random

import pytest

from handsfree.audio import AudioArbiter
from handsfree.config import AudioConfig
from handsfree.errors import InputFaultError
from handsfree.models import AudioPhase, Availability, InputFault


class Mic:
    def __init__(self):
        self.calls = []
        self.fail_with = None

    def start(self):
        self.calls.append("start")
        if self.fail_with is not None:
            raise self.fail_with

    def stop(self):
        self.calls.append("stop")

    @property
    def starts(self):
        return self.calls.count("start")


@pytest.fixture
def mic():
    return Mic()


@pytest.fixture
def statuses():
    return []


@pytest.fixture
def arbiter(scheduler, mic, statuses):
    return AudioArbiter(scheduler, mic.start, mic.stop, AudioConfig(), on_status=statuses.append)


def test_enable_starts_listening(arbiter, mic):
    arbiter.enable()
    assert arbiter.phase is AudioPhase.LISTENING
    assert mic.calls == ["start"]
    assert arbiter.accepting_transcripts


def test_synthesis_start_cuts_input_in_the_same_call(arbiter, mic):
    arbiter.enable()
    arbiter.synthesis_started()
    assert mic.calls == ["start", "stop"]
    assert arbiter.phase is AudioPhase.SPEAKING
    assert ("listening", "paused", "synthesis_started") in arbiter.transitions
    assert not arbiter.accepting_transcripts


def test_resume_waits_for_settle_window(arbiter, mic, scheduler):
    arbiter.enable()
    arbiter.synthesis_started()
    arbiter.synthesis_ended()
    assert arbiter.phase is AudioPhase.PAUSED

    scheduler.advance(1.49)
    assert arbiter.phase is AudioPhase.PAUSED
    assert mic.starts == 1

    scheduler.advance(0.01)
    assert arbiter.phase is AudioPhase.LISTENING
    assert mic.starts == 2


def test_new_synthesis_during_settle_cancels_resume(arbiter, mic, scheduler):
    arbiter.enable()
    arbiter.synthesis_started()
    arbiter.synthesis_ended()
    scheduler.advance(1.0)
    arbiter.synthesis_started()
    scheduler.advance(5.0)
    assert arbiter.phase is AudioPhase.SPEAKING
    assert mic.starts == 1


def test_own_stop_is_not_a_fault(arbiter, mic):
    arbiter.enable()
    arbiter.synthesis_started()
    arbiter.input_error(InputFault.ABORTED)
    arbiter.input_ended()
    assert arbiter.state.retries == 0
    assert arbiter.phase is AudioPhase.SPEAKING


def test_quick_toggle_absorbs_the_late_end_of_the_old_session(arbiter, mic):
    arbiter.enable()
    arbiter.disable()
    arbiter.enable()
    arbiter.input_ended()  # end of the session stopped by disable()
    assert arbiter.state.retries == 0
    assert arbiter.phase is AudioPhase.LISTENING
    assert mic.starts == 2

    arbiter.input_ended()
    assert arbiter.state.retries == 1
    assert mic.starts == 3


def test_three_transient_faults_give_up_without_a_fourth_start(arbiter, mic, scheduler, statuses):
    arbiter.enable()
    for _ in range(2):
        arbiter.input_error(InputFault.NETWORK)
        assert arbiter.phase is AudioPhase.RETRYING
        scheduler.advance(2.0)
        assert arbiter.phase is AudioPhase.LISTENING

    arbiter.input_error(InputFault.NETWORK)
    assert arbiter.phase is AudioPhase.IDLE
    assert statuses == [Availability.UNAVAILABLE]

    scheduler.advance(30.0)
    assert mic.starts == 3


def test_confirmed_start_resets_budget(arbiter, scheduler):
    arbiter.enable()
    arbiter.input_error(InputFault.AUDIO_CAPTURE)
    scheduler.advance(2.0)
    arbiter.input_started()
    assert arbiter.state.retries == 0


def test_no_speech_restart_is_free(arbiter, mic):
    arbiter.enable()
    arbiter.input_error(InputFault.NO_SPEECH)
    arbiter.input_ended()
    assert arbiter.phase is AudioPhase.LISTENING
    assert arbiter.state.retries == 0
    assert mic.starts == 2


def test_unexpected_end_restarts_and_costs_a_retry(arbiter, mic):
    arbiter.enable()
    arbiter.input_ended()
    assert arbiter.phase is AudioPhase.LISTENING
    assert arbiter.state.retries == 1
    assert mic.starts == 2


@pytest.mark.parametrize(
    "fault", [InputFault.PERMISSION_DENIED, InputFault.SERVICE_DISABLED, InputFault.ABORTED],
)
def test_fatal_fault_blocks_once(arbiter, mic, scheduler, statuses, fault):
    arbiter.enable()
    arbiter.input_error(fault)
    arbiter.input_error(fault)
    assert arbiter.phase is AudioPhase.IDLE
    assert statuses == [Availability.BLOCKED]
    scheduler.advance(10.0)
    assert mic.starts == 1


def test_reenable_after_block(arbiter, mic, statuses):
    arbiter.enable()
    arbiter.input_error(InputFault.PERMISSION_DENIED)
    arbiter.enable()
    assert arbiter.phase is AudioPhase.LISTENING
    assert statuses == [Availability.BLOCKED, Availability.AVAILABLE]


def test_start_raising_fault_error_is_classified(arbiter, mic, statuses):
    mic.fail_with = InputFaultError(InputFault.PERMISSION_DENIED)
    arbiter.enable()
    assert arbiter.phase is AudioPhase.IDLE
    assert statuses == [Availability.BLOCKED]


def test_start_raising_anything_else_is_a_capture_fault(arbiter, mic):
    mic.fail_with = RuntimeError("device busy")
    arbiter.enable()
    assert arbiter.phase is AudioPhase.RETRYING
    assert arbiter.state.last_fault is InputFault.AUDIO_CAPTURE


def test_disable_stops_everything(arbiter, mic, scheduler):
    arbiter.enable()
    arbiter.synthesis_started()
    arbiter.synthesis_ended()
    arbiter.disable()
    scheduler.advance(5.0)
    assert arbiter.phase is AudioPhase.IDLE
    assert mic.starts == 1


def test_enable_during_synthesis_waits(arbiter, mic, scheduler):
    arbiter.synthesis_started()
    arbiter.enable()
    assert arbiter.phase is AudioPhase.SPEAKING
    assert mic.starts == 0
    arbiter.synthesis_ended()
    scheduler.advance(1.5)
    assert arbiter.phase is AudioPhase.LISTENING


@pytest.mark.parametrize("seed", range(20))
def test_never_listening_while_speaking(scheduler, mic, seed):
    arbiter = AudioArbiter(scheduler, mic.start, mic.stop, AudioConfig())
    rng = random.Random(seed)
    ops = [
        arbiter.enable,
        arbiter.disable,
        arbiter.synthesis_started,
        arbiter.synthesis_ended,
        arbiter.input_started,
        arbiter.input_ended,
        lambda: arbiter.input_error(rng.choice(list(InputFault))),
        lambda: scheduler.advance(rng.choice([0.1, 0.5, 1.5, 2.0])),
    ]
    for _ in range(300):
        rng.choice(ops)()
        assert not (arbiter.listening and arbiter.speaking)
        if arbiter.speaking:
            assert not arbiter.accepting_transcripts
