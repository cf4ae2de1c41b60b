"""
Manual Override Service - operator commands behind the dashboard

Every command honours the same state-machine guards as the automatic sweeps
and raises StateTransitionError when the guard rejects it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import Config
from database import managed_session
from models import (
    Advertisement, BlacklistedWallet as BlacklistedWalletRow, BybitAccount, PaymentMethod, Payout,
    Receipt, ReceiptMatchMode, Transaction, TransactionStatus,
)
from services.advertisement_issuer import calculate_quantity
from services.platform_clients import AdvertisementParams
from services.settlement_errors import (
    AdvertisementNotFound, PlatformAPIError, ReceiptNotFound, StateTransitionError, TransactionNotFound,
)
from utils.datetime_helpers import get_naive_utc_now
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

S = TransactionStatus


def serialize_transaction(tx: Transaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "payout_id": tx.payout_id,
        "advertisement_id": tx.advertisement_id,
        "order_id": tx.order_id,
        "status": tx.status,
        "chat_step": tx.chat_step,
        "failure_reason": tx.failure_reason,
        "needs_attention": tx.needs_attention,
        "attention_reason": tx.attention_reason,
        "receipt_received_at": tx.receipt_received_at.isoformat() if tx.receipt_received_at else None,
        "approved_at": tx.approved_at.isoformat() if tx.approved_at else None,
        "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
        "cancelled_at": tx.cancelled_at.isoformat() if tx.cancelled_at else None,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


class ManualOverrideService:
    def __init__(self, client, capacity_manager, fund_release_scheduler, receipt_ingestion,
                 session_factory=None, price_provider=None):
        self.client = client
        self.capacity_manager = capacity_manager
        self.fund_release_scheduler = fund_release_scheduler
        self.receipt_ingestion = receipt_ingestion
        self.session_factory = session_factory
        self.price_provider = price_provider

    @staticmethod
    def _require(result, command: str, transaction_id: int) -> None:
        if not result.applied:
            current = result.previous.value if result.previous else "unknown"
            raise StateTransitionError(
                f"{command} rejected for transaction {transaction_id} in state {current} ({result.reason})"
            )

    async def force_reissue_advertisement(self, payout_id: int) -> Dict[str, Any]:
        """Replace the external ad of a pending, unbound transaction on the same Advertisement row"""
        with managed_session(self.session_factory) as session:
            tx = session.execute(
                select(Transaction).where(Transaction.payout_id == payout_id)
            ).scalar_one_or_none()
            if tx is None:
                raise TransactionNotFound(f"Payout {payout_id} has no transaction")
            if tx.status != S.PENDING.value or tx.order_id is not None:
                raise StateTransitionError(
                    f"Re-issue requires a pending transaction without an order (is {tx.status}, order {tx.order_id})"
                )
            ad = session.get(Advertisement, tx.advertisement_id)
            if ad is None:
                raise AdvertisementNotFound(f"Advertisement {tx.advertisement_id} not found")
            account_id = session.get(BybitAccount, ad.bybit_account_id).account_id
            payout = session.get(Payout, payout_id)
            old_ad_id = ad.bybit_ad_id
            price = self.price_provider(payout) if self.price_provider else ad.price
            amount = payout.amount
            method = PaymentMethod(ad.payment_method)
            advertisement_id = ad.id
            transaction_id = tx.id

        method_id = await self.capacity_manager.get_payment_method_id(account_id, method)
        timeout = self.capacity_manager.call_timeout
        try:
            await asyncio.wait_for(self.client.cancel_advertisement(account_id, old_ad_id), timeout=timeout)
        except Exception as e:
            # The old ad must be gone before its replacement goes live
            logger.error(f"❌ REISSUE_CANCEL_FAILED: {old_ad_id} on {account_id}, reissue aborted: {e}")
            raise PlatformAPIError(f"Could not cancel advertisement {old_ad_id}: {e}") from e

        params = AdvertisementParams(
            price=price,
            quantity=calculate_quantity(amount, price),
            min_amount=amount,
            max_amount=amount,
            payment_method_id=method_id,
            token_id=Config.AD_TOKEN,
            currency_id=Config.AD_FIAT_CURRENCY,
            payment_period_minutes=Config.AD_PAYMENT_PERIOD_MINUTES,
            remark=Config.AD_REMARK,
        )
        new_ad_id = await asyncio.wait_for(self.client.create_advertisement(account_id, params), timeout=timeout)
        self.capacity_manager.invalidate(account_id)

        with managed_session(self.session_factory) as session:
            ad = session.get(Advertisement, advertisement_id)
            ad.bybit_ad_id = new_ad_id
            ad.price = params.price
            ad.quantity = params.quantity
            ad.is_active = True
            ad.deactivated_at = None
            TransactionStateMachine.assign_fields(
                session, transaction_id, [S.PENDING], where=[Transaction.order_id.is_(None)],
                needs_attention=False, attention_reason=None,
            )

        logger.info(f"🔁 AD_REISSUED: payout {payout_id} {old_ad_id} -> {new_ad_id}")
        return {"transaction_id": transaction_id, "old_ad_id": old_ad_id, "new_ad_id": new_ad_id}

    async def force_release(self, transaction_id: int) -> Dict[str, Any]:
        """Release immediately, skipping the safety delay"""
        with managed_session(self.session_factory) as session:
            tx = session.get(Transaction, transaction_id)
            if tx is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")
            status = tx.status

        allowed = {S.RECEIPT_RECEIVED.value, S.PAYMENT_RECEIVED.value, S.RELEASE_MONEY.value}
        if status not in allowed:
            raise StateTransitionError(f"Force release not allowed from {status}")

        result = await self.fund_release_scheduler.release(
            transaction_id,
            claim_from=[S.RECEIPT_RECEIVED, S.PAYMENT_RECEIVED],
            resume_claimed=True,
        )
        logger.warning(f"⚡ FORCED_RELEASE: Transaction {transaction_id} released={result.released}")
        return {"transaction_id": transaction_id, "released": result.released, "status": result.status,
                "error": result.error}

    def force_cancel(self, transaction_id: int, reason: str = "Cancelled by operator") -> None:
        with managed_session(self.session_factory) as session:
            result = TransactionStateMachine.transition(
                session, transaction_id, S.CANCELLED, failure_reason=reason
            )
            self._require(result, "force_cancel", transaction_id)
        logger.warning(f"⚡ FORCED_CANCEL: Transaction {transaction_id}: {reason}")

    def confirm_payment(self, transaction_id: int) -> None:
        """Operator saw the money arrive; the fund-release delay starts now"""
        with managed_session(self.session_factory) as session:
            result = TransactionStateMachine.transition(
                session, transaction_id, S.PAYMENT_RECEIVED,
                expected_from=[S.CHAT_STARTED, S.WAITING_PAYMENT, S.PAYMENT_CONFIRMED],
                approved_at=get_naive_utc_now(),
            )
            self._require(result, "confirm_payment", transaction_id)
        logger.info(f"✅ PAYMENT_CONFIRMED_BY_OPERATOR: Transaction {transaction_id}")

    def confirm_receipt_match(self, receipt_id: int) -> int:
        """Promote a fuzzy receipt link to a confirmed match; returns the transaction id"""
        with managed_session(self.session_factory) as session:
            receipt = session.get(Receipt, receipt_id)
            if receipt is None:
                raise ReceiptNotFound(f"Receipt {receipt_id} not found")
            if receipt.payout_id is None or receipt.match_mode != ReceiptMatchMode.FUZZY.value:
                raise StateTransitionError(f"Receipt {receipt_id} has no fuzzy link to confirm")

            tx = session.execute(
                select(Transaction).where(Transaction.payout_id == receipt.payout_id)
            ).scalar_one_or_none()
            if tx is None:
                raise TransactionNotFound(f"Payout {receipt.payout_id} has no transaction")
            transaction_id = tx.id

            result = TransactionStateMachine.transition(
                session, transaction_id, S.RECEIPT_RECEIVED,
                expected_from=[S.PENDING, S.CHAT_STARTED, S.WAITING_PAYMENT, S.PAYMENT_CONFIRMED],
                receipt_received_at=get_naive_utc_now(),
            )
            self._require(result, "confirm_receipt_match", transaction_id)
            receipt.match_mode = ReceiptMatchMode.MANUAL.value
            receipt.matched_at = get_naive_utc_now()

        logger.info(f"✅ RECEIPT_MATCH_CONFIRMED: receipt {receipt_id} -> transaction {transaction_id}")
        return transaction_id

    def mark_receipt_corrected(self, receipt_id: int, **fields) -> None:
        self.receipt_ingestion.mark_corrected(receipt_id, **fields)

    def blacklist_wallet(self, wallet: str, reason: Optional[str] = None) -> int:
        """Blacklist a wallet and terminate its live transactions as blacklisted"""
        moved = 0
        with managed_session(self.session_factory) as session:
            exists = session.execute(
                select(BlacklistedWalletRow.id).where(BlacklistedWalletRow.wallet == wallet)
            ).first()
            if exists is None:
                session.add(BlacklistedWalletRow(wallet=wallet, reason=reason))
                session.flush()
            transaction_ids = session.execute(
                select(Transaction.id)
                .join(Payout, Payout.id == Transaction.payout_id)
                .where(
                    Payout.wallet == wallet,
                    Transaction.status.in_([s.value for s in TransactionStateMachine.ACTIVE_STATES]),
                )
            ).scalars().all()
            for transaction_id in transaction_ids:
                if TransactionStateMachine.transition(
                    session, transaction_id, S.BLACKLISTED, failure_reason=reason or "Wallet blacklisted"
                ).applied:
                    moved += 1
        logger.warning(f"🚫 WALLET_BLACKLISTED: {wallet}, {moved} transactions terminated")
        return moved

    def list_transactions(self, status: Optional[str] = None, limit: int = 100,
                          needs_attention: Optional[bool] = None) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            stmt = select(Transaction).order_by(Transaction.id.desc()).limit(limit)
            if status:
                stmt = stmt.where(Transaction.status == TransactionStatus(status).value)
            if needs_attention is not None:
                stmt = stmt.where(Transaction.needs_attention.is_(needs_attention))
            return [serialize_transaction(tx) for tx in session.execute(stmt).scalars().all()]
