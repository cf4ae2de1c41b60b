"""
Fund Release Scheduler - releases escrowed crypto after the safety delay

A release is claimed with a compare-and-set into ``release_money`` before the
external call, so a transaction is released at most once. When a settlement
client is configured the payout is approved there, with its matched receipt,
before the funds move. A failed call moves the transaction to ``failed``; it is
never retried automatically.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_, select, update

from config import Config
from database import managed_session
from models import (
    Advertisement, BybitAccount, Payout, Receipt, ReceiptMatchMode, Transaction, TransactionStatus,
)
from services.platform_clients import ParsedReceipt, SettlementPlatformClient, TradingPlatformClient
from services.settlement_errors import OrderAlreadyFinished
from utils.datetime_helpers import get_naive_utc_now
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

RELEASABLE_STATES = [TransactionStatus.RECEIPT_RECEIVED, TransactionStatus.PAYMENT_RECEIVED]


def receipt_document(receipt: Receipt) -> ParsedReceipt:
    return ParsedReceipt(
        source_email_id=receipt.source_email_id,
        amount=receipt.amount,
        transfer_datetime=receipt.transfer_datetime,
        transfer_type=receipt.transfer_type,
        status=receipt.status,
        recipient_bank=receipt.recipient_bank,
        recipient_phone=receipt.recipient_phone,
        recipient_card=receipt.recipient_card,
    )


@dataclass
class ReleaseResult:
    transaction_id: int
    released: bool
    status: Optional[str] = None
    error: Optional[str] = None


class FundReleaseScheduler:
    """Selects transactions past the safety delay and releases their funds"""

    def __init__(self, client: TradingPlatformClient, session_factory=None,
                 delay_seconds: int = Config.FUND_RELEASE_DELAY_SECONDS,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS,
                 capacity_manager=None,
                 settlement_client: Optional[SettlementPlatformClient] = None):
        self.client = client
        self.settlement_client = settlement_client
        self.session_factory = session_factory
        self.delay = timedelta(seconds=delay_seconds)
        self.call_timeout = call_timeout
        self.capacity_manager = capacity_manager

    def select_due(self, now: Optional[datetime] = None) -> List[int]:
        """Transaction ids whose receipt match or approval is older than the delay"""
        cutoff = (now or get_naive_utc_now()) - self.delay
        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(Transaction.id)
                .where(or_(
                    and_(
                        Transaction.status == TransactionStatus.RECEIPT_RECEIVED.value,
                        Transaction.receipt_received_at.is_not(None),
                        Transaction.receipt_received_at <= cutoff,
                    ),
                    and_(
                        Transaction.status == TransactionStatus.PAYMENT_RECEIVED.value,
                        Transaction.approved_at.is_not(None),
                        Transaction.approved_at <= cutoff,
                    ),
                ))
                .order_by(Transaction.id)
            ).scalars().all())

    def _fail(self, transaction_id: int, reason: str) -> None:
        with managed_session(self.session_factory) as session:
            TransactionStateMachine.transition(
                session, transaction_id, TransactionStatus.FAILED,
                expected_from=[TransactionStatus.RELEASE_MONEY], failure_reason=reason,
            )
        logger.error(f"❌ RELEASE_FAILED: Transaction {transaction_id}: {reason}")

    async def _approve_payout(self, payout_id: int, gate_payout_id: str) -> None:
        with managed_session(self.session_factory) as session:
            receipt = session.execute(
                select(Receipt)
                .where(
                    Receipt.payout_id == payout_id,
                    Receipt.match_mode.in_([ReceiptMatchMode.EXACT.value, ReceiptMatchMode.MANUAL.value]),
                )
                .order_by(Receipt.id)
            ).scalars().first()
            document = receipt_document(receipt) if receipt is not None else None

        await asyncio.wait_for(
            self.settlement_client.approve_payout(gate_payout_id, document), timeout=self.call_timeout
        )

        with managed_session(self.session_factory) as session:
            session.execute(
                update(Payout)
                .where(Payout.id == payout_id)
                .values(approved_at=get_naive_utc_now(), status=Config.PAYOUT_STATUS_APPROVED)
            )
        logger.info(
            f"✅ PAYOUT_APPROVED: payout {gate_payout_id} approved on the settlement platform "
            f"(receipt {document.source_email_id if document else 'none'})"
        )

    async def release(self, transaction_id: int,
                      claim_from: Iterable[TransactionStatus] = RELEASABLE_STATES,
                      resume_claimed: bool = False) -> ReleaseResult:
        """
        Release funds for one transaction.

        Args:
            claim_from: states the release may start from
            resume_claimed: also continue a transaction already in release_money
                (operator command for a release interrupted mid-flight)
        """
        with managed_session(self.session_factory) as session:
            claim = TransactionStateMachine.transition(
                session, transaction_id, TransactionStatus.RELEASE_MONEY, expected_from=claim_from
            )
            already_claimed = claim.previous == TransactionStatus.RELEASE_MONEY
            if not claim.applied and not (resume_claimed and already_claimed):
                return ReleaseResult(transaction_id, False, claim.previous.value if claim.previous else None,
                                     error=claim.reason)

            row = session.execute(
                select(
                    Transaction.order_id, BybitAccount.account_id,
                    Payout.id.label("payout_id"), Payout.gate_payout_id, Payout.approved_at,
                )
                .join(Payout, Payout.id == Transaction.payout_id)
                .join(Advertisement, Advertisement.id == Transaction.advertisement_id)
                .join(BybitAccount, BybitAccount.id == Advertisement.bybit_account_id)
                .where(Transaction.id == transaction_id)
            ).one()
            order_id, account_id = row.order_id, row.account_id

        if order_id is None:
            self._fail(transaction_id, "No order bound, nothing to release")
            return ReleaseResult(transaction_id, False, TransactionStatus.FAILED.value, "no_order")

        if self.settlement_client is not None and row.approved_at is None:
            try:
                await self._approve_payout(row.payout_id, row.gate_payout_id)
            except asyncio.TimeoutError:
                self._fail(transaction_id, f"Payout approval timed out after {self.call_timeout}s")
                return ReleaseResult(transaction_id, False, TransactionStatus.FAILED.value, "approval_timeout")
            except Exception as e:
                self._fail(transaction_id, f"Payout approval error: {e}")
                return ReleaseResult(transaction_id, False, TransactionStatus.FAILED.value, "approval_failed")

        try:
            await asyncio.wait_for(self.client.release_funds(account_id, order_id), timeout=self.call_timeout)
        except OrderAlreadyFinished:
            logger.info(f"ℹ️ RELEASE_ALREADY_DONE: order {order_id} was already finished on the platform")
        except asyncio.TimeoutError:
            self._fail(transaction_id, f"Release call timed out after {self.call_timeout}s")
            return ReleaseResult(transaction_id, False, TransactionStatus.FAILED.value, "timeout")
        except Exception as e:
            self._fail(transaction_id, f"Release error: {e}")
            return ReleaseResult(transaction_id, False, TransactionStatus.FAILED.value, str(e))

        with managed_session(self.session_factory) as session:
            TransactionStateMachine.transition(
                session, transaction_id, TransactionStatus.COMPLETED,
                expected_from=[TransactionStatus.RELEASE_MONEY],
            )
            actual = session.get(Transaction, transaction_id, populate_existing=True).status
            if actual != TransactionStatus.COMPLETED.value:
                TransactionStateMachine.assign_fields(
                    session, transaction_id, list(TransactionStatus),
                    needs_attention=True,
                    attention_reason=f"Funds released on order {order_id} but transaction is {actual}",
                )
        if self.capacity_manager is not None:
            self.capacity_manager.invalidate(account_id)
        if actual != TransactionStatus.COMPLETED.value:
            logger.warning(
                f"⚠️ RELEASE_STATE_CHANGED: Transaction {transaction_id} order {order_id} released "
                f"while {actual}, flagged for review"
            )
            return ReleaseResult(transaction_id, True, actual, error="state_changed")
        logger.info(f"💰 FUNDS_RELEASED: Transaction {transaction_id} order {order_id} completed")
        return ReleaseResult(transaction_id, True, TransactionStatus.COMPLETED.value)

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        results: Dict[str, Any] = {"due": 0, "released": 0, "failed": 0, "errors": []}
        due = self.select_due(now)
        results["due"] = len(due)
        for transaction_id in due:
            try:
                outcome = await self.release(transaction_id)
            except Exception as e:
                results["errors"].append(transaction_id)
                logger.error(f"❌ RELEASE_SWEEP_ERROR: Transaction {transaction_id}: {e}")
                continue
            if outcome.released:
                results["released"] += 1
            elif outcome.status == TransactionStatus.FAILED.value:
                results["failed"] += 1

        if due:
            logger.info(
                f"📊 FUND_RELEASE_SWEEP: due={results['due']} released={results['released']} "
                f"failed={results['failed']}"
            )
        return results
