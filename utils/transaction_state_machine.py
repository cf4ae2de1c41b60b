"""
Transaction State Machine
=========================

Owns Transaction status changes. Every write is a single conditional UPDATE
guarded by the status that was read (compare-and-set), so concurrent sweeps and
duplicate push events cannot regress a Transaction or resurrect a terminal one.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Transaction, TransactionStatus
from services.settlement_errors import TransactionNotFound
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

S = TransactionStatus

_ABORT_STATES = {S.CANCELLED, S.FAILED, S.BLACKLISTED}


@dataclass
class TransitionResult:
    """Outcome of a guarded status change"""

    applied: bool
    previous: Optional[TransactionStatus]
    current: Optional[TransactionStatus]
    reason: str = ""

    def __bool__(self) -> bool:
        return self.applied


class TransactionStateMachine:
    """
    Validates and applies Transaction transitions.

    Forward progress:
        pending -> chat_started -> waiting_payment -> payment_received/receipt_received
                -> release_money -> completed
    Any non-terminal state may abort to cancelled/failed/blacklisted.
    appeal is entered from payment_received/release_money on a dispute signal.
    """

    VALID_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        S.PENDING: {S.CHAT_STARTED, S.WAITING_PAYMENT, S.RECEIPT_RECEIVED},
        S.CHAT_STARTED: {S.WAITING_PAYMENT, S.PAYMENT_RECEIVED, S.PAYMENT_CONFIRMED, S.RECEIPT_RECEIVED},
        S.WAITING_PAYMENT: {S.PAYMENT_RECEIVED, S.PAYMENT_CONFIRMED, S.RECEIPT_RECEIVED},
        S.PAYMENT_CONFIRMED: {S.PAYMENT_RECEIVED, S.RECEIPT_RECEIVED, S.RELEASE_MONEY},
        S.PAYMENT_RECEIVED: {S.RECEIPT_RECEIVED, S.RELEASE_MONEY, S.APPEAL, S.COMPLETED},
        S.RECEIPT_RECEIVED: {S.RELEASE_MONEY, S.COMPLETED},
        S.RELEASE_MONEY: {S.COMPLETED, S.APPEAL},
        S.APPEAL: {S.COMPLETED},
        # Terminal states
        S.COMPLETED: set(),
        S.CANCELLED: set(),
        S.FAILED: set(),
        S.BLACKLISTED: set(),
    }

    TERMINAL_STATES: Set[TransactionStatus] = {S.COMPLETED, S.CANCELLED, S.FAILED, S.BLACKLISTED}

    # Statuses that mean the transaction is still tied to a live ad/order
    ACTIVE_STATES: Set[TransactionStatus] = set(VALID_TRANSITIONS) - TERMINAL_STATES

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        return TransactionStatus(status) in cls.TERMINAL_STATES

    @classmethod
    def get_valid_next_states(cls, current_status: TransactionStatus) -> Set[TransactionStatus]:
        if current_status in cls.TERMINAL_STATES:
            return set()
        return cls.VALID_TRANSITIONS.get(current_status, set()) | _ABORT_STATES

    @classmethod
    def is_valid_transition(cls, from_status, to_status) -> bool:
        """Check a transition without touching the database"""
        try:
            from_enum = TransactionStatus(from_status)
            to_enum = TransactionStatus(to_status)
        except ValueError:
            return False
        return to_enum in cls.get_valid_next_states(from_enum)

    @classmethod
    def transition(
        cls,
        session: Session,
        transaction_id: int,
        target: TransactionStatus,
        expected_from: Optional[Iterable[TransactionStatus]] = None,
        where: Iterable[Any] = (),
        **fields,
    ) -> TransitionResult:
        """
        Move a Transaction to ``target`` if the edge is allowed.

        Args:
            session: caller-owned session; commit handled by caller
            transaction_id: Transaction primary key
            target: desired status
            expected_from: restrict the source states further than the edge table
            where: extra SQL criteria for the conditional update (e.g. order_id IS NULL)
            **fields: column values written together with the status

        Returns:
            TransitionResult; conflicts and terminal sources are no-ops, never errors

        Raises:
            TransactionNotFound: no Transaction with that id
        """
        tx = session.get(Transaction, transaction_id, populate_existing=True)
        if tx is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        current = TransactionStatus(tx.status)

        if current == target:
            logger.debug(f"⏭️ TRANSITION_NOOP: Transaction {transaction_id} already {target.value}")
            return TransitionResult(False, current, current, "already_in_state")

        if current in cls.TERMINAL_STATES:
            logger.info(
                f"🛑 TERMINAL_NOOP: Transaction {transaction_id} is {current.value}, "
                f"ignoring transition to {target.value}"
            )
            return TransitionResult(False, current, current, "terminal")

        expected = set(expected_from) if expected_from is not None else None
        if expected is not None and current not in expected:
            logger.info(
                f"⏭️ UNEXPECTED_STATE: Transaction {transaction_id} is {current.value}, "
                f"expected one of {sorted(s.value for s in expected)} for -> {target.value}"
            )
            return TransitionResult(False, current, current, "unexpected_state")

        if not cls.is_valid_transition(current, target):
            logger.warning(
                f"⚠️ INVALID_TRANSITION: Transaction {transaction_id} {current.value} -> {target.value} "
                f"Valid options: {sorted(s.value for s in cls.get_valid_next_states(current))}"
            )
            return TransitionResult(False, current, current, "invalid_transition")

        now = get_naive_utc_now()
        values = {"status": target.value, "updated_at": now, **fields}
        if target == S.COMPLETED:
            values.setdefault("completed_at", now)
        elif target == S.CANCELLED:
            values.setdefault("cancelled_at", now)

        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == current.value, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        session.expire(tx)

        if result.rowcount == 0:
            logger.warning(
                f"🔒 STALE_TRANSITION: Transaction {transaction_id} changed concurrently, "
                f"{current.value} -> {target.value} rejected"
            )
            return TransitionResult(False, current, None, "stale")

        logger.info(f"✅ STATUS_UPDATE: Transaction {transaction_id} {current.value} -> {target.value}")
        return TransitionResult(True, current, target)

    @classmethod
    def assign_fields(
        cls,
        session: Session,
        transaction_id: int,
        allowed_states: Iterable[TransactionStatus],
        where: Iterable[Any] = (),
        **fields,
    ) -> bool:
        """Guarded write of non-status columns; returns False when the guard rejected it"""
        states = [s.value for s in allowed_states]
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(states), *where)
            .values(updated_at=get_naive_utc_now(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        tx = session.get(Transaction, transaction_id)
        if tx is not None:
            session.expire(tx)
        if result.rowcount == 0:
            logger.debug(f"⏭️ ASSIGN_SKIPPED: Transaction {transaction_id} fields {list(fields)} guard rejected")
            return False
        return True
