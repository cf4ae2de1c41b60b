"""
Ingestion of external feeds: settlement-platform payouts and parsed mail receipts

Both feeds are at-least-once; every record is upserted by its external id.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import managed_session
from models import Payout, Receipt
from services.platform_clients import ParsedReceipt, PayoutRecord
from services.settlement_errors import ReceiptNotFound
from utils.datetime_helpers import platform_local_to_utc

logger = logging.getLogger(__name__)

_CORRECTABLE_FIELDS = (
    "amount", "transfer_datetime", "transfer_type", "status",
    "recipient_bank", "recipient_phone", "recipient_card",
)


class PayoutIngestionService:
    """Upserts payouts by gate_payout_id; each record is its own unit of work"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @staticmethod
    def _apply(session, record: PayoutRecord) -> bool:
        """Write one record; True when the payout is new"""
        if record.created_at is None:
            raise ValueError("created_at is required")
        status = int(record.status)

        payout = session.execute(
            select(Payout).where(Payout.gate_payout_id == str(record.gate_payout_id))
        ).scalar_one_or_none()
        created = payout is None
        if created:
            payout = Payout(gate_payout_id=str(record.gate_payout_id))
            session.add(payout)

        payout.wallet = record.wallet
        payout.amount = record.amount
        payout.bank_name = (record.bank_name or "").strip().lower()
        payout.bank_label = record.bank_label or ""
        payout.status = status
        payout.created_at = platform_local_to_utc(record.created_at)
        # A feed lagging behind our own approval must not clear it
        payout.approved_at = platform_local_to_utc(record.approved_at) or payout.approved_at
        session.flush()
        return created

    def upsert_payouts(self, records: Iterable[PayoutRecord]) -> Dict[str, Any]:
        """A malformed record is logged and skipped; the rest of the batch is stored"""
        results: Dict[str, Any] = {"created": 0, "updated": 0, "errors": []}
        for record in records:
            try:
                with managed_session(self.session_factory) as session:
                    created = self._apply(session, record)
            except Exception as e:
                results["errors"].append(str(record.gate_payout_id))
                logger.error(f"❌ PAYOUT_INGEST_ERROR: payout {record.gate_payout_id}: {e}")
                continue
            results["created" if created else "updated"] += 1

        if results["created"] or results["errors"]:
            logger.info(
                f"📥 PAYOUTS_INGESTED: created={results['created']} updated={results['updated']} "
                f"errors={len(results['errors'])}"
            )
        return results


class ReceiptIngestionService:
    """Stores one Receipt per source e-mail; parse failures are kept but not matchable"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def _find(self, session, source_email_id: str) -> Optional[Receipt]:
        return session.execute(
            select(Receipt).where(Receipt.source_email_id == source_email_id)
        ).scalar_one_or_none()

    def ingest(self, parsed: ParsedReceipt) -> int:
        """Return the Receipt id; re-delivery of the same e-mail returns the existing row"""
        try:
            with managed_session(self.session_factory) as session:
                existing = self._find(session, parsed.source_email_id)
                if existing is not None:
                    logger.debug(f"⏭️ RECEIPT_DUPLICATE: e-mail {parsed.source_email_id}")
                    return existing.id

                receipt = Receipt(
                    source_email_id=parsed.source_email_id,
                    amount=parsed.amount,
                    transfer_datetime=platform_local_to_utc(parsed.transfer_datetime),
                    transfer_type=parsed.transfer_type,
                    status=parsed.status,
                    recipient_bank=parsed.recipient_bank,
                    recipient_phone=parsed.recipient_phone,
                    recipient_card=parsed.recipient_card,
                    parse_ok=parsed.parse_ok,
                    parse_error=parsed.parse_error,
                )
                session.add(receipt)
                session.flush()
                receipt_id = receipt.id
        except IntegrityError:
            with managed_session(self.session_factory) as session:
                return self._find(session, parsed.source_email_id).id

        if parsed.parse_ok:
            logger.info(f"🧾 RECEIPT_INGESTED: {receipt_id} from e-mail {parsed.source_email_id}")
        else:
            logger.warning(f"⚠️ RECEIPT_PARSE_FAILED: {receipt_id} e-mail {parsed.source_email_id}: {parsed.parse_error}")
        return receipt_id

    def mark_corrected(self, receipt_id: int, **fields) -> None:
        """Apply operator corrections and make the receipt matchable again"""
        unknown = set(fields) - set(_CORRECTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be corrected: {sorted(unknown)}")

        with managed_session(self.session_factory) as session:
            receipt = session.get(Receipt, receipt_id)
            if receipt is None:
                raise ReceiptNotFound(f"Receipt {receipt_id} not found")
            for name, value in fields.items():
                if name == "transfer_datetime":
                    value = platform_local_to_utc(value)
                setattr(receipt, name, value)
            receipt.parse_ok = True
            receipt.parse_error = None
        logger.info(f"✏️ RECEIPT_CORRECTED: {receipt_id} fields={sorted(fields)}")
