"""
Settlement Engine - wires the reconciliation components around one trading client

Push events (webhook) and periodic sweeps (scheduler) both call into the same
idempotent operations held here.
"""

import asyncio
import hashlib
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from database import SessionLocal
from services.account_capacity_manager import AccountCapacityManager
from services.advertisement_cleanup_service import AdvertisementCleanupService
from services.advertisement_issuer import AdvertisementIssuer, default_price_provider
from services.appeal_sync_service import AppealSyncService
from services.cancellation_detector import CancellationDetector
from services.chat_automation import ChatAutomationService
from services.fund_release_scheduler import FundReleaseScheduler
from services.ingestion_service import PayoutIngestionService, ReceiptIngestionService
from services.manual_override_service import ManualOverrideService
from services.order_binder import OrderBinder
from services.platform_clients import ParsedReceipt, SettlementPlatformClient, TradingPlatformClient
from services.receipt_matcher import ReceiptMatcher
from services.settlement_errors import AdvertisementNotFound, TransactionNotFound

logger = logging.getLogger(__name__)

EVENT_ORDER_CREATED = "ORDER_CREATED"
EVENT_CHAT_MESSAGE = "chatMessage"


def _event_message_id(event: Dict[str, Any]) -> str:
    explicit = event.get("messageId") or event.get("id")
    if explicit:
        return str(explicit)
    # Events without an id are de-duplicated on their content
    raw = "|".join(str(event.get(key, "")) for key in ("orderId", "senderId", "content", "createDate"))
    return "evt-" + hashlib.sha1(raw.encode("utf-8")).hexdigest()


class SettlementEngine:
    """Holds one instance of every component, sharing the session factory and caches"""

    def __init__(self, client: TradingPlatformClient, session_factory=None,
                 price_provider: Callable = default_price_provider,
                 payout_feed: Optional[SettlementPlatformClient] = None):
        self.client = client
        self.payout_feed = payout_feed
        self.session_factory = session_factory or SessionLocal

        sf = self.session_factory
        self.capacity_manager = AccountCapacityManager(client, sf)
        self.issuer = AdvertisementIssuer(client, self.capacity_manager, sf, price_provider)
        self.chat_automation = ChatAutomationService(client, sf)
        self.order_binder = OrderBinder(client, self.chat_automation, sf)
        self.receipt_matcher = ReceiptMatcher(sf)
        self.cancellation_detector = CancellationDetector(client, sf)
        self.fund_release = FundReleaseScheduler(
            client, sf, capacity_manager=self.capacity_manager, settlement_client=payout_feed
        )
        self.appeal_sync = AppealSyncService(client, sf)
        self.ad_cleanup = AdvertisementCleanupService(client, self.capacity_manager, sf)
        self.payout_ingestion = PayoutIngestionService(sf)
        self.receipt_ingestion = ReceiptIngestionService(sf)
        self.overrides = ManualOverrideService(
            client, self.capacity_manager, self.fund_release, self.receipt_ingestion, sf, price_provider
        )

    async def sync_payouts(self) -> Dict[str, Any]:
        """Pull the settlement-platform feed and upsert every payout"""
        if self.payout_feed is None:
            return {"created": 0, "updated": 0, "errors": []}
        records = await asyncio.wait_for(
            self.payout_feed.fetch_payouts(), timeout=self.capacity_manager.call_timeout
        )
        return self.payout_ingestion.upsert_payouts(records)

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one trading-platform push event"""
        event_type = event.get("type")

        if event_type == EVENT_ORDER_CREATED:
            item_id, order_id = event.get("itemId"), event.get("orderId")
            if not item_id or not order_id:
                logger.warning(f"⚠️ EVENT_INCOMPLETE: {event_type} without itemId/orderId")
                return {"status": "ignored", "reason": "missing_fields"}
            price = event.get("price")
            try:
                result = await self.order_binder.bind_order(
                    str(item_id), str(order_id), Decimal(str(price)) if price is not None else None
                )
            except (AdvertisementNotFound, TransactionNotFound):
                # The poll path retries once the local write is visible
                return {"status": "deferred"}
            return {"status": result.status.value, "transaction_id": result.transaction_id}

        if event_type == EVENT_CHAT_MESSAGE:
            order_id = event.get("orderId")
            if not order_id:
                return {"status": "ignored", "reason": "missing_fields"}
            message_id = self.chat_automation.ingest_message(
                str(order_id), _event_message_id(event), str(event.get("senderId", "")), event.get("content") or ""
            )
            if message_id is None:
                return {"status": "deferred"}
            await self.chat_automation.process_unprocessed()
            return {"status": "stored", "message_id": message_id}

        logger.debug(f"⏭️ EVENT_IGNORED: type={event_type}")
        return {"status": "ignored", "reason": "unknown_type"}

    def ingest_receipt(self, parsed: ParsedReceipt) -> Dict[str, Any]:
        """Store a parsed receipt and try the exact match right away"""
        receipt_id = self.receipt_ingestion.ingest(parsed)
        if not parsed.parse_ok:
            return {"receipt_id": receipt_id, "matched": False}
        result = self.receipt_matcher.match(receipt_id)
        return {"receipt_id": receipt_id, "matched": result.matched, "transaction_id": result.transaction_id}


_engine: Optional[SettlementEngine] = None


def set_settlement_engine(engine: Optional[SettlementEngine]) -> None:
    global _engine
    _engine = engine


def get_settlement_engine() -> SettlementEngine:
    if _engine is None:
        raise RuntimeError("Settlement engine not initialized")
    return _engine
