"""Tests for task state machines and cancellation."""

import threading

import pytest

from tf_bridge.bridge.checkin import CHECKIN_TRANSITIONS, CheckinState
from tf_bridge.bridge.fetch import FETCH_TRANSITIONS, FetchState
from tf_bridge.bridge.machine import CancellationToken, StateMachine
from tf_bridge.errors import InvalidTransition


class TestStateMachine:
    def test_happy_path(self):
        machine = StateMachine("checkin", CHECKIN_TRANSITIONS, CheckinState.INIT)
        for state in (
            CheckinState.VALIDATING,
            CheckinState.PENDING,
            CheckinState.COMMITTING,
            CheckinState.MAPPED,
            CheckinState.DONE,
        ):
            machine.advance(state)
        assert machine.terminal
        assert machine.history[0] == CheckinState.INIT
        assert machine.history[-1] == CheckinState.DONE

    def test_invalid_transition_raises(self):
        machine = StateMachine("checkin", CHECKIN_TRANSITIONS, CheckinState.INIT)
        with pytest.raises(InvalidTransition, match="init to committing"):
            machine.advance(CheckinState.COMMITTING)
        assert machine.state == CheckinState.INIT

    def test_terminal_states_are_final(self):
        machine = StateMachine("fetch", FETCH_TRANSITIONS, FetchState.INIT)
        machine.advance(FetchState.ABORTED)
        assert machine.terminal
        assert not machine.can_advance(FetchState.RANGE_RESOLVED)

    @pytest.mark.parametrize(
        "table,states",
        [(CHECKIN_TRANSITIONS, CheckinState), (FETCH_TRANSITIONS, FetchState)],
    )
    def test_tables_are_exhaustive(self, table, states):
        assert set(table) == set(states)
        for state, successors in table.items():
            assert successors <= set(states)
            if successors:
                assert states.ABORTED in successors


class TestCancellationToken:
    def test_cancel_from_other_thread(self):
        token = CancellationToken()
        assert not token.cancelled
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()
        assert token.cancelled
