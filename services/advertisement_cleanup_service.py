"""
Advertisement Cleanup Service - takes ads offline once their trade no longer needs them

An ad is retired when its transaction is terminal or already has a matched
receipt. The platform cancel happens first; the local flag follows on success.
"""

import asyncio
import logging
from typing import Any, Dict

from sqlalchemy import select, update

from config import Config
from database import managed_session
from models import Advertisement, BybitAccount, Transaction, TransactionStatus
from services.platform_clients import TradingPlatformClient
from utils.datetime_helpers import get_naive_utc_now
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

RETIRE_STATES = TransactionStateMachine.TERMINAL_STATES | {
    TransactionStatus.RECEIPT_RECEIVED,
    TransactionStatus.RELEASE_MONEY,
    TransactionStatus.APPEAL,
}


class AdvertisementCleanupService:
    def __init__(self, client: TradingPlatformClient, capacity_manager=None, session_factory=None,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS, batch_size: int = 50):
        self.client = client
        self.capacity_manager = capacity_manager
        self.session_factory = session_factory
        self.call_timeout = call_timeout
        self.batch_size = batch_size

    async def retire(self, advertisement_id: int, account_id: str, bybit_ad_id: str) -> bool:
        await asyncio.wait_for(
            self.client.cancel_advertisement(account_id, bybit_ad_id), timeout=self.call_timeout
        )
        with managed_session(self.session_factory) as session:
            session.execute(
                update(Advertisement)
                .where(Advertisement.id == advertisement_id, Advertisement.is_active.is_(True))
                .values(is_active=False, deactivated_at=get_naive_utc_now())
            )
        if self.capacity_manager is not None:
            self.capacity_manager.invalidate(account_id)
        logger.info(f"🧹 AD_DEACTIVATED: {bybit_ad_id} on {account_id}")
        return True

    async def sweep(self) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Advertisement.id, Advertisement.bybit_ad_id, BybitAccount.account_id)
                .join(Transaction, Transaction.advertisement_id == Advertisement.id)
                .join(BybitAccount, BybitAccount.id == Advertisement.bybit_account_id)
                .where(
                    Advertisement.is_active.is_(True),
                    Transaction.status.in_([s.value for s in RETIRE_STATES]),
                )
                .limit(self.batch_size)
            ).all()

        results: Dict[str, Any] = {"candidates": len(rows), "deactivated": 0, "errors": []}
        for advertisement_id, bybit_ad_id, account_id in rows:
            try:
                await self.retire(advertisement_id, account_id, bybit_ad_id)
                results["deactivated"] += 1
            except Exception as e:
                results["errors"].append(bybit_ad_id)
                logger.error(f"❌ AD_CLEANUP_ERROR: {bybit_ad_id} on {account_id}: {e!r}")
        return results
