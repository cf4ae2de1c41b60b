"""
Cancellation Detector - forces bound transactions into ``cancelled`` when the order dies

The live order status is authoritative. A cancellation phrase in the chat is
only evidence: it triggers a fresh status read and nothing else.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select

from config import Config
from database import managed_session
from models import Advertisement, BybitAccount, ChatMessage, Transaction, TransactionStatus
from services.platform_clients import TradingPlatformClient
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

CANCELLATION_PHRASES = [
    "Your order has been canceled. The seller is not allowed to appeal after the order is canceled.",
    "Ваш заказ был отменен",
    "Your order has been cancelled",
    "Order cancelled",
    "Заказ отменен",
    "订单已取消",
]

_LOWERED_PHRASES = [phrase.lower() for phrase in CANCELLATION_PHRASES]


def contains_cancellation_phrase(texts: Iterable[str]) -> bool:
    for text in texts:
        lowered = (text or "").lower()
        if any(phrase in lowered for phrase in _LOWERED_PHRASES):
            return True
    return False


class CancellationDetector:
    """Sweeps non-terminal transactions with a bound order"""

    def __init__(self, client: TradingPlatformClient, session_factory=None,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS):
        self.client = client
        self.session_factory = session_factory
        self.call_timeout = call_timeout

    async def _live_status(self, account_id: str, order_id: str) -> int:
        order = await asyncio.wait_for(
            self.client.get_order_details(account_id, order_id), timeout=self.call_timeout
        )
        return int(order.status)

    def _cancel(self, transaction_id: int, reason: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = TransactionStateMachine.transition(
                session, transaction_id, TransactionStatus.CANCELLED, failure_reason=reason
            )
        if result.applied:
            logger.info(f"🚫 ORDER_CANCELLED: Transaction {transaction_id}: {reason}")
        return result.applied

    def _load_target(self, transaction_id: int) -> Optional[Tuple[str, str, List[str]]]:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(Transaction.order_id, Transaction.status, BybitAccount.account_id)
                .join(Advertisement, Advertisement.id == Transaction.advertisement_id)
                .join(BybitAccount, BybitAccount.id == Advertisement.bybit_account_id)
                .where(Transaction.id == transaction_id)
            ).first()
            if row is None or row.order_id is None or TransactionStateMachine.is_terminal_state(row.status):
                return None
            bodies = session.execute(
                select(ChatMessage.body).where(ChatMessage.transaction_id == transaction_id)
            ).scalars().all()
        return row.account_id, row.order_id, list(bodies)

    async def check_transaction(self, transaction_id: int) -> bool:
        """Return True when the transaction was moved to cancelled"""
        target = self._load_target(transaction_id)
        if target is None:
            return False
        account_id, order_id, local_bodies = target

        if await self._live_status(account_id, order_id) == Config.ORDER_STATUS_CANCELLED:
            return self._cancel(transaction_id, f"Order {order_id} cancelled on platform")

        hit = contains_cancellation_phrase(local_bodies)
        if not hit:
            live_messages = await asyncio.wait_for(
                self.client.get_chat_messages(account_id, order_id), timeout=self.call_timeout
            )
            hit = contains_cancellation_phrase(message.content for message in live_messages)
        if not hit:
            return False

        # A phrase alone is evidence, not proof
        status = await self._live_status(account_id, order_id)
        if status != Config.ORDER_STATUS_CANCELLED:
            logger.info(
                f"🔍 CANCEL_PHRASE_UNCONFIRMED: Transaction {transaction_id} order {order_id} "
                f"still has live status {status}"
            )
            return False
        return self._cancel(transaction_id, f"Order {order_id} cancelled (chat notice confirmed by platform)")

    async def sweep(self) -> Dict[str, Any]:
        active = [s.value for s in TransactionStateMachine.ACTIVE_STATES]
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Transaction.id, BybitAccount.account_id)
                .join(Advertisement, Advertisement.id == Transaction.advertisement_id)
                .join(BybitAccount, BybitAccount.id == Advertisement.bybit_account_id)
                .where(Transaction.order_id.is_not(None), Transaction.status.in_(active))
                .order_by(Transaction.id)
            ).all()

        by_account: Dict[str, List[int]] = defaultdict(list)
        for transaction_id, account_id in rows:
            by_account[account_id].append(transaction_id)

        results: Dict[str, Any] = {"checked": 0, "cancelled": 0, "errors": []}

        async def sweep_account(account_id: str, transaction_ids: List[int]) -> None:
            # Calls for one account stay sequential to respect its rate limit
            for transaction_id in transaction_ids:
                results["checked"] += 1
                try:
                    if await self.check_transaction(transaction_id):
                        results["cancelled"] += 1
                except Exception as e:
                    results["errors"].append(transaction_id)
                    logger.error(f"❌ CANCELLATION_CHECK_ERROR: Transaction {transaction_id} on {account_id}: {e!r}")

        await asyncio.gather(*(sweep_account(acc, ids) for acc, ids in by_account.items()))

        if results["cancelled"]:
            logger.info(f"📊 CANCELLATION_SWEEP: checked={results['checked']} cancelled={results['cancelled']}")
        return results
