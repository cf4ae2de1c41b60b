"""
Transaction State Machine Tests
Edge table, compare-and-set writes and terminal absorption
"""

import pytest

from models import Transaction, TransactionStatus
from services.settlement_errors import TransactionNotFound
from utils.transaction_state_machine import TransactionStateMachine

S = TransactionStatus


class TestTransitionTable:
    """Pure checks against the edge table"""

    def test_forward_path_is_valid(self):
        path = [S.PENDING, S.CHAT_STARTED, S.WAITING_PAYMENT, S.RECEIPT_RECEIVED, S.RELEASE_MONEY, S.COMPLETED]
        for current, target in zip(path, path[1:]):
            assert TransactionStateMachine.is_valid_transition(current, target), f"{current} -> {target}"

    def test_every_active_state_can_abort(self):
        for state in TransactionStateMachine.ACTIVE_STATES:
            for abort in (S.CANCELLED, S.FAILED, S.BLACKLISTED):
                assert TransactionStateMachine.is_valid_transition(state, abort)

    def test_terminal_states_have_no_exits(self):
        for terminal in TransactionStateMachine.TERMINAL_STATES:
            assert TransactionStateMachine.get_valid_next_states(terminal) == set()
            for target in S:
                assert not TransactionStateMachine.is_valid_transition(terminal, target)

    def test_backward_moves_rejected(self):
        assert not TransactionStateMachine.is_valid_transition(S.WAITING_PAYMENT, S.PENDING)
        assert not TransactionStateMachine.is_valid_transition(S.RECEIPT_RECEIVED, S.CHAT_STARTED)

    def test_unknown_status_string_is_invalid(self):
        assert not TransactionStateMachine.is_valid_transition("pending", "exploded")


class TestGuardedTransition:
    """transition() against a real session"""

    def test_applies_allowed_transition(self, seed, session_factory):
        ids = seed.trade()
        with session_factory() as session:
            result = TransactionStateMachine.transition(session, ids["transaction_id"], S.CHAT_STARTED)
            session.commit()
        assert result.applied
        assert result.previous == S.PENDING
        assert seed.get(Transaction, ids["transaction_id"]).status == "chat_started"

    def test_completed_stamps_completed_at(self, seed, session_factory):
        ids = seed.trade(status=S.RELEASE_MONEY, order_id="o-1")
        with session_factory() as session:
            assert TransactionStateMachine.transition(session, ids["transaction_id"], S.COMPLETED)
            session.commit()
        assert seed.get(Transaction, ids["transaction_id"]).completed_at is not None

    def test_invalid_transition_is_noop(self, seed, session_factory):
        ids = seed.trade()
        with session_factory() as session:
            result = TransactionStateMachine.transition(session, ids["transaction_id"], S.COMPLETED)
            session.commit()
        assert not result.applied
        assert result.reason == "invalid_transition"
        assert seed.get(Transaction, ids["transaction_id"]).status == "pending"

    def test_same_state_is_noop(self, seed, session_factory):
        ids = seed.trade(status=S.CHAT_STARTED, order_id="o-1")
        with session_factory() as session:
            result = TransactionStateMachine.transition(session, ids["transaction_id"], S.CHAT_STARTED)
        assert result.reason == "already_in_state"

    def test_expected_from_restricts_sources(self, seed, session_factory):
        ids = seed.trade(status=S.CHAT_STARTED, order_id="o-1")
        with session_factory() as session:
            result = TransactionStateMachine.transition(
                session, ids["transaction_id"], S.WAITING_PAYMENT, expected_from=[S.PENDING]
            )
        assert result.reason == "unexpected_state"

    def test_extra_criteria_failure_reports_stale(self, seed, session_factory):
        ids = seed.trade(order_id="o-1")
        with session_factory() as session:
            result = TransactionStateMachine.transition(
                session, ids["transaction_id"], S.CHAT_STARTED,
                where=[Transaction.order_id.is_(None)], order_id="o-2",
            )
            session.commit()
        assert result.reason == "stale"
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "pending"
        assert tx.order_id == "o-1"

    def test_missing_transaction_raises(self, session_factory):
        with session_factory() as session:
            with pytest.raises(TransactionNotFound):
                TransactionStateMachine.transition(session, 999, S.CHAT_STARTED)


class TestMonotonicState:
    """No sequence of operations leaves a terminal state"""

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED, S.FAILED, S.BLACKLISTED])
    def test_terminal_absorbs_every_target(self, seed, session_factory, terminal):
        ids = seed.trade(status=terminal, order_id="o-1")
        with session_factory() as session:
            for target in S:
                result = TransactionStateMachine.transition(session, ids["transaction_id"], target)
                assert not result.applied
            session.commit()
        assert seed.get(Transaction, ids["transaction_id"]).status == terminal.value

    def test_assign_fields_respects_state_guard(self, seed, session_factory):
        ids = seed.trade(status=S.CANCELLED)
        with session_factory() as session:
            assigned = TransactionStateMachine.assign_fields(
                session, ids["transaction_id"], TransactionStateMachine.ACTIVE_STATES, order_id="late-order"
            )
            session.commit()
        assert assigned is False
        assert seed.get(Transaction, ids["transaction_id"]).order_id is None
