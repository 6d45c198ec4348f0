"""Tests for StopController."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from taskengine.control.stop_controller import StopController


def test_idle_controller_never_stops():
    stop = StopController()
    assert not stop.has_stop_request()
    assert not stop.should_stop()
    stop.confirm_stop()
    assert not stop.is_stop_confirmed()
    assert stop.get_stop_state() is None


def test_non_graceful_stop_is_immediate():
    stop = StopController()
    stop.request_stop(graceful=False)
    assert stop.has_stop_request()
    assert stop.should_stop()
    assert not stop.is_graceful()


def test_graceful_stop_waits_for_confirmation():
    stop = StopController()
    stop.request_stop()
    assert stop.is_graceful()
    assert stop.should_save_state()
    assert not stop.should_stop()

    stop.confirm_stop()
    assert stop.is_stop_confirmed()
    assert stop.should_stop()


def test_stop_state_reflects_progress():
    stop = StopController()
    stop.update_state("s1", completed_steps=2, last_step_id=7, partial_result={"value": 120})
    stop.update_state("s1", completed_steps=3)
    stop.request_stop(graceful=True, save_state=False)

    state = stop.get_stop_state()
    assert state.session_id == "s1"
    assert state.completed_steps == 3
    assert state.last_step_id == 7
    assert state.partial_result == {"value": 120}
    assert state.can_resume is False


def test_reset_clears_everything():
    stop = StopController()
    stop.update_state("s1", completed_steps=1)
    stop.request_stop(graceful=False, save_state=False)
    stop.reset()

    assert not stop.has_stop_request()
    assert not stop.should_stop()
    assert stop.is_graceful()
    assert stop.should_save_state()
    assert stop.get_stop_state() is None
