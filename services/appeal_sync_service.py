"""
Appeal Sync Service - mirrors platform disputes onto local transactions
"""

import asyncio
import logging
from typing import Any, Dict, List

from sqlalchemy import select

from config import Config
from database import managed_session
from models import BybitAccount, Transaction, TransactionStatus
from services.platform_clients import TradingPlatformClient
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

APPEALABLE_STATES = [TransactionStatus.PAYMENT_RECEIVED, TransactionStatus.RELEASE_MONEY]


class AppealSyncService:
    def __init__(self, client: TradingPlatformClient, session_factory=None,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS):
        self.client = client
        self.session_factory = session_factory
        self.call_timeout = call_timeout

    def _mark_appeal(self, order_ids: List[str]) -> int:
        moved = 0
        with managed_session(self.session_factory) as session:
            transaction_ids = session.execute(
                select(Transaction.id).where(
                    Transaction.order_id.in_(order_ids),
                    Transaction.status.in_([s.value for s in APPEALABLE_STATES]),
                )
            ).scalars().all()
            for transaction_id in transaction_ids:
                if TransactionStateMachine.transition(
                    session, transaction_id, TransactionStatus.APPEAL, expected_from=APPEALABLE_STATES
                ).applied:
                    moved += 1
        return moved

    async def sweep(self) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            account_ids = session.execute(
                select(BybitAccount.account_id).where(BybitAccount.is_active.is_(True))
            ).scalars().all()

        outcomes = await asyncio.gather(
            *(asyncio.wait_for(self.client.list_orders(account_id, Config.ORDER_STATUS_APPEAL),
                               timeout=self.call_timeout)
              for account_id in account_ids),
            return_exceptions=True,
        )

        results: Dict[str, Any] = {"appealed_orders": 0, "moved": 0, "errors": []}
        order_ids: List[str] = []
        for account_id, outcome in zip(account_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"❌ APPEAL_SYNC_ERROR: Account {account_id}: {outcome!r}")
                results["errors"].append(account_id)
                continue
            order_ids.extend(order.order_id for order in outcome)

        results["appealed_orders"] = len(order_ids)
        if order_ids:
            results["moved"] = self._mark_appeal(order_ids)
        if results["moved"]:
            logger.warning(f"⚖️ APPEALS_OPENED: {results['moved']} transactions moved to appeal")
        return results
