"""
Order Binder - attaches a live trade order to its Transaction exactly once

The push path (ORDER_CREATED events) and the poll path (sweep_active_orders)
both end in bind_order; duplicate or late deliveries are absorbed as no-ops.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from config import Config
from database import managed_session
from models import Advertisement, BybitAccount, Transaction, TransactionStatus
from services.platform_clients import OrderInfo, TradingPlatformClient
from services.settlement_errors import AdvertisementNotFound, TransactionNotFound
from utils.datetime_helpers import get_naive_utc_now
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)


class BindStatus(Enum):
    BOUND = "bound"
    ALREADY_BOUND = "already_bound"
    CONFLICT = "conflict"
    TERMINAL = "terminal"


@dataclass
class BindResult:
    status: BindStatus
    transaction_id: Optional[int] = None
    order_id: Optional[str] = None


class OrderBinder:
    """Binds orders to transactions via a guarded pending -> chat_started transition"""

    def __init__(self, client: TradingPlatformClient, chat_automation=None, session_factory=None,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS):
        self.client = client
        self.chat_automation = chat_automation
        self.session_factory = session_factory
        self.call_timeout = call_timeout

    async def bind_order(self, item_id: str, order_id: str, observed_price: Optional[Decimal] = None) -> BindResult:
        """
        Bind ``order_id`` to the Transaction behind advertisement ``item_id``.

        Raises:
            AdvertisementNotFound: the advertisement is not (yet) known locally;
                the next sweep retries
        """
        try:
            with managed_session(self.session_factory) as session:
                ad = session.execute(
                    select(Advertisement).where(Advertisement.bybit_ad_id == str(item_id))
                ).scalar_one_or_none()
                if ad is None:
                    logger.warning(f"⚠️ AD_NOT_FOUND: item {item_id} for order {order_id}")
                    raise AdvertisementNotFound(f"Advertisement {item_id} not found")

                tx = session.execute(
                    select(Transaction).where(Transaction.advertisement_id == ad.id)
                ).scalar_one_or_none()
                if tx is None:
                    raise TransactionNotFound(f"Advertisement {item_id} has no transaction")

                if tx.order_id is not None:
                    if tx.order_id != str(order_id):
                        logger.warning(
                            f"⚠️ ORDER_ALREADY_BOUND: Transaction {tx.id} holds order {tx.order_id}, "
                            f"ignoring {order_id} for item {item_id}"
                        )
                    return BindResult(BindStatus.ALREADY_BOUND, tx.id, tx.order_id)

                if TransactionStateMachine.is_terminal_state(tx.status):
                    logger.info(f"🛑 BIND_SKIPPED: Transaction {tx.id} is {tx.status}, order {order_id} not bound")
                    return BindResult(BindStatus.TERMINAL, tx.id)

                if observed_price is not None and abs(Decimal(str(observed_price)) - ad.price) > Config.PRICE_MISMATCH_TOLERANCE:
                    logger.warning(
                        f"⚠️ PRICE_MISMATCH: order {order_id} price {observed_price} vs ad {item_id} price {ad.price}"
                    )

                transaction_id = tx.id
                unbound = [Transaction.order_id.is_(None)]
                if tx.status == TransactionStatus.PENDING.value:
                    bound = TransactionStateMachine.transition(
                        session, transaction_id, TransactionStatus.CHAT_STARTED,
                        expected_from=[TransactionStatus.PENDING], where=unbound, order_id=str(order_id),
                    ).applied
                else:
                    # Already progressed (e.g. receipt matched first); attach the order only
                    bound = TransactionStateMachine.assign_fields(
                        session, transaction_id, TransactionStateMachine.ACTIVE_STATES,
                        where=unbound, order_id=str(order_id),
                    )
        except IntegrityError:
            logger.warning(f"⚠️ ORDER_CONFLICT: order {order_id} is already bound to another transaction")
            return BindResult(BindStatus.CONFLICT, order_id=str(order_id))

        if not bound:
            return BindResult(BindStatus.ALREADY_BOUND, transaction_id)

        logger.info(f"🔗 ORDER_BOUND: order {order_id} -> Transaction {transaction_id} (item {item_id})")
        if self.chat_automation is not None:
            try:
                await self.chat_automation.start(transaction_id)
            except Exception as e:
                # chat_step stays 0; the chat processor retries on the next message
                logger.error(f"❌ CHAT_START_ERROR: Transaction {transaction_id}: {e}")
        return BindResult(BindStatus.BOUND, transaction_id, str(order_id))

    async def _resolve_item_id(self, account_id: str, order: OrderInfo) -> Optional[str]:
        if order.item_id:
            return order.item_id
        details = await self.client.get_order_details(account_id, order.order_id)
        return details.item_id

    async def _sweep_account(self, account_id: str, known_orders: set) -> Dict[str, int]:
        counts = {"seen": 0, "bound": 0}
        orders: List[OrderInfo] = await self.client.list_active_orders(account_id)
        for order in orders:
            counts["seen"] += 1
            if order.order_id in known_orders:
                continue
            item_id = await self._resolve_item_id(account_id, order)
            if not item_id:
                logger.warning(f"⚠️ ORDER_WITHOUT_ITEM: order {order.order_id} on {account_id}")
                continue
            try:
                result = await self.bind_order(item_id, order.order_id, order.price)
            except (AdvertisementNotFound, TransactionNotFound) as e:
                logger.debug(f"⏭️ ORDER_UNMATCHED: {order.order_id}: {e}")
                continue
            if result.status == BindStatus.BOUND:
                counts["bound"] += 1
        return counts

    async def sweep_active_orders(self) -> Dict[str, Any]:
        """Poll every active account for orders the push path may have missed"""
        with managed_session(self.session_factory) as session:
            account_ids = session.execute(
                select(BybitAccount.account_id).where(BybitAccount.is_active.is_(True))
            ).scalars().all()
            known_orders = set(session.execute(
                select(Transaction.order_id).where(Transaction.order_id.is_not(None))
            ).scalars().all())

        outcomes = await asyncio.gather(
            *(asyncio.wait_for(self._sweep_account(account_id, known_orders), timeout=self.call_timeout)
              for account_id in account_ids),
            return_exceptions=True,
        )

        results: Dict[str, Any] = {"accounts": len(account_ids), "seen": 0, "bound": 0, "errors": []}
        for account_id, outcome in zip(account_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"❌ ORDER_POLL_ERROR: Account {account_id}: {outcome!r}")
                results["errors"].append(account_id)
                continue
            results["seen"] += outcome["seen"]
            results["bound"] += outcome["bound"]

        if results["bound"]:
            logger.info(f"📊 ORDER_POLL: bound {results['bound']} of {results['seen']} active orders")
        return results

    def flag_stale_unbound(self, now: Optional[datetime] = None) -> int:
        """Flag pending transactions without an order past the staleness threshold; never cancels"""
        now = now or get_naive_utc_now()
        cutoff = now - timedelta(seconds=Config.UNBOUND_ORDER_STALE_SECONDS)
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(Transaction)
                .where(
                    Transaction.status == TransactionStatus.PENDING.value,
                    Transaction.order_id.is_(None),
                    Transaction.created_at <= cutoff,
                    Transaction.needs_attention.is_(False),
                )
                .values(
                    needs_attention=True,
                    attention_reason=f"No order bound after {Config.UNBOUND_ORDER_STALE_SECONDS // 60} minutes",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            flagged = result.rowcount
        if flagged:
            logger.warning(f"🚩 STALE_UNBOUND: {flagged} pending transactions flagged for operator attention")
        return flagged
