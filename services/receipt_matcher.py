"""
Receipt Matcher - links parsed bank receipts to waiting payouts

Two modes, deliberately kept apart:
- match(): exact amount against transactions that are waiting for a receipt;
  advances the transaction to receipt_received.
- discover_payout(): tolerant amount search for orphan receipts (bank commission
  can shave the transferred sum); only links the receipt for operator review.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import (
    Payout, Receipt, ReceiptMatchMode, ReceiptStatus, Transaction, TransactionStatus, TransferType,
)
from services.settlement_errors import ReceiptNotFound
from utils.datetime_helpers import get_naive_utc_now, platform_date
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

BANK_ALIASES: Dict[str, List[str]] = {
    "alfabank": ["альфа", "alfa", "альфа-банк", "alfa-bank", "альфабанк", "альфа банк"],
    "yandexbank": ["яндекс", "yandex", "яндекс банк", "yandex bank", "я.банк"],
    "ozonbank": ["озон", "ozon", "озон банк", "ozon bank", "озонбанк"],
    "tbank": ["т-банк", "t-bank", "тинькофф", "tinkoff", "т банк", "тбанк"],
    "sberbank": ["сбер", "sber", "сбербанк", "sberbank", "сбер банк"],
    "vtb": ["втб", "vtb", "втб банк", "vtb bank"],
}

# Transactions that are still waiting for proof of payment
MATCHABLE_STATES = [
    TransactionStatus.PENDING,
    TransactionStatus.CHAT_STARTED,
    TransactionStatus.WAITING_PAYMENT,
    TransactionStatus.PAYMENT_CONFIRMED,
]

_NON_DIGIT = re.compile(r"\D")


def last_digits(value: Optional[str], count: int) -> str:
    return _NON_DIGIT.sub("", value or "")[-count:]


def resolve_bank_code(text: Optional[str]) -> Optional[str]:
    """Map a free-text bank name to its code via the alias table"""
    lowered = (text or "").strip().lower()
    if not lowered:
        return None
    if lowered in BANK_ALIASES:
        return lowered
    for code, aliases in BANK_ALIASES.items():
        if any(alias in lowered for alias in aliases):
            return code
    return None


def bank_matches(payout: Payout, receipt: Receipt) -> bool:
    transfer_type = receipt.transfer_type
    payout_code = (payout.bank_name or "").strip().lower()

    if transfer_type == TransferType.TO_TBANK.value:
        return payout_code == Config.OWN_BANK_CODE or resolve_bank_code(payout.bank_label) == Config.OWN_BANK_CODE

    if transfer_type == TransferType.TO_CARD.value:
        return True

    if transfer_type == TransferType.BY_PHONE.value and receipt.recipient_bank:
        receipt_bank = receipt.recipient_bank.lower()
        if any(alias in receipt_bank for alias in BANK_ALIASES.get(payout_code, [])):
            return True
        mentioned = resolve_bank_code(receipt_bank)
        if mentioned is not None:
            return mentioned == payout_code
        return bool(payout_code) and payout_code in receipt_bank

    return False


def wallet_matches(payout: Payout, receipt: Receipt) -> bool:
    transfer_type = receipt.transfer_type
    phone_digits = Config.PHONE_MATCH_DIGITS
    card_digits = Config.CARD_MATCH_DIGITS

    if transfer_type == TransferType.BY_PHONE.value or (
        transfer_type == TransferType.TO_TBANK.value and receipt.recipient_phone
    ):
        receipt_phone = last_digits(receipt.recipient_phone, phone_digits)
        return len(receipt_phone) == phone_digits and receipt_phone == last_digits(payout.wallet, phone_digits)

    if transfer_type in (TransferType.TO_CARD.value, TransferType.TO_TBANK.value):
        receipt_card = last_digits(receipt.recipient_card, card_digits)
        return len(receipt_card) == card_digits and receipt_card == last_digits(payout.wallet, card_digits)

    return False


def check_receipt(payout: Payout, receipt: Receipt, tolerance: Decimal = Decimal("0")) -> Optional[str]:
    """
    Run every matching rule; return the first failing rule name or None on success.

    ``tolerance`` is zero for exact matching against a known payout.
    """
    if receipt.status != ReceiptStatus.SUCCESS.value:
        return "status"
    if receipt.transfer_datetime is None or payout.created_at is None:
        return "date"
    if platform_date(receipt.transfer_datetime) < platform_date(payout.created_at):
        return "date"
    if not bank_matches(payout, receipt):
        return "bank"
    if not wallet_matches(payout, receipt):
        return "wallet"
    if receipt.amount is None or abs(Decimal(receipt.amount) - Decimal(payout.amount)) > tolerance:
        return "amount"
    return None


@dataclass
class MatchResult:
    matched: bool
    receipt_id: int
    payout_id: Optional[int] = None
    transaction_id: Optional[int] = None
    reason: str = ""


class ReceiptMatcher:
    """Matches receipts to payouts; every write is a guarded single-row update"""

    def __init__(self, session_factory=None, batch_size: int = Config.RECEIPT_BATCH_SIZE,
                 fuzzy_tolerance: Decimal = Config.FUZZY_AMOUNT_TOLERANCE_RUB):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.fuzzy_tolerance = fuzzy_tolerance

    @staticmethod
    def _receipt_linked(payout_id_column):
        return exists().where(
            Receipt.payout_id == payout_id_column,
            Receipt.match_mode.in_([ReceiptMatchMode.EXACT.value, ReceiptMatchMode.MANUAL.value]),
        )

    def _load_matchable_receipt(self, session: Session, receipt_id: int) -> Optional[Receipt]:
        receipt = session.get(Receipt, receipt_id)
        if receipt is None:
            raise ReceiptNotFound(f"Receipt {receipt_id} not found")
        if not receipt.parse_ok:
            logger.debug(f"⏭️ RECEIPT_UNPARSED: {receipt_id} excluded until corrected")
            return None
        if receipt.payout_id is not None:
            return None
        return receipt

    def _link_receipt(self, session: Session, receipt_id: int, payout_id: int, mode: ReceiptMatchMode) -> bool:
        result = session.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id, Receipt.payout_id.is_(None))
            .values(payout_id=payout_id, match_mode=mode.value, matched_at=get_naive_utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def match(self, receipt_id: int) -> MatchResult:
        """
        Exact match of one receipt against transactions waiting for payment.

        Candidates are tried oldest payout first; the first one passing every
        rule wins. Receipt link and transition commit together or not at all.
        """
        with managed_session(self.session_factory) as session:
            receipt = self._load_matchable_receipt(session, receipt_id)
            if receipt is None:
                return MatchResult(False, receipt_id, reason="not_matchable")

            candidates = session.execute(
                select(Transaction, Payout)
                .join(Payout, Payout.id == Transaction.payout_id)
                .where(
                    Transaction.status.in_([s.value for s in MATCHABLE_STATES]),
                    Payout.status.in_(Config.AWAITING_PAYOUT_STATUSES),
                    ~self._receipt_linked(Payout.id),
                )
                .order_by(Payout.created_at, Payout.id)
            ).all()

            for tx, payout in candidates:
                if check_receipt(payout, receipt) is not None:
                    continue

                if not self._link_receipt(session, receipt_id, payout.id, ReceiptMatchMode.EXACT):
                    return MatchResult(False, receipt_id, reason="already_linked")

                transition = TransactionStateMachine.transition(
                    session, tx.id, TransactionStatus.RECEIPT_RECEIVED,
                    expected_from=MATCHABLE_STATES,
                    receipt_received_at=get_naive_utc_now(),
                )
                if not transition.applied:
                    # Transaction moved under us; undo the link and keep the receipt for the next sweep
                    session.rollback()
                    return MatchResult(False, receipt_id, reason=f"transition_{transition.reason}")

                logger.info(
                    f"🧾 RECEIPT_MATCHED: receipt {receipt_id} -> payout {payout.gate_payout_id} "
                    f"transaction {tx.id} amount={receipt.amount}"
                )
                return MatchResult(True, receipt_id, payout.id, tx.id)

        return MatchResult(False, receipt_id, reason="no_candidate")

    def discover_payout(self, receipt_id: int) -> MatchResult:
        """
        Tolerant search for an orphan receipt's payout.

        The single candidate with the smallest amount difference within the
        tolerance wins; equal best differences mean no match. The link is
        recorded as fuzzy and the transaction is not advanced.
        """
        with managed_session(self.session_factory) as session:
            receipt = self._load_matchable_receipt(session, receipt_id)
            if receipt is None:
                return MatchResult(False, receipt_id, reason="not_matchable")

            terminal = [s.value for s in TransactionStateMachine.TERMINAL_STATES]
            payouts = session.execute(
                select(Payout)
                .outerjoin(Transaction, Transaction.payout_id == Payout.id)
                .where(
                    Payout.status.in_(Config.AWAITING_PAYOUT_STATUSES),
                    ~exists().where(Receipt.payout_id == Payout.id),
                    (Transaction.id.is_(None)) | (~Transaction.status.in_(terminal)),
                )
            ).scalars().all()

            scored = []
            for payout in payouts:
                if check_receipt(payout, receipt, tolerance=self.fuzzy_tolerance) is None:
                    scored.append((abs(Decimal(receipt.amount) - Decimal(payout.amount)), payout))
            if not scored:
                return MatchResult(False, receipt_id, reason="no_candidate")

            scored.sort(key=lambda item: item[0])
            if len(scored) > 1 and scored[0][0] == scored[1][0]:
                logger.warning(
                    f"⚠️ FUZZY_AMBIGUOUS: receipt {receipt_id} has {len(scored)} candidates, "
                    f"best difference {scored[0][0]} is tied"
                )
                return MatchResult(False, receipt_id, reason="ambiguous")

            difference, payout = scored[0]
            if not self._link_receipt(session, receipt_id, payout.id, ReceiptMatchMode.FUZZY):
                return MatchResult(False, receipt_id, reason="already_linked")

            logger.info(
                f"🔍 RECEIPT_DISCOVERED: receipt {receipt_id} -> payout {payout.gate_payout_id} "
                f"(difference {difference}), awaiting confirmation"
            )
            return MatchResult(True, receipt_id, payout.id, reason="fuzzy")

    def _unmatched_receipt_ids(self) -> Iterator[int]:
        """Page through every unlinked, successful receipt by id, batch_size rows at a time"""
        last_id = 0
        while True:
            with managed_session(self.session_factory) as session:
                page = session.execute(
                    select(Receipt.id)
                    .where(
                        Receipt.payout_id.is_(None),
                        Receipt.parse_ok.is_(True),
                        Receipt.status == ReceiptStatus.SUCCESS.value,
                        Receipt.id > last_id,
                    )
                    .order_by(Receipt.id)
                    .limit(self.batch_size)
                ).scalars().all()
            if not page:
                return
            yield from page
            last_id = page[-1]

    def sweep_unmatched(self) -> Dict[str, Any]:
        """Retry every unmatched, parsed receipt; failures are isolated per receipt"""
        results: Dict[str, Any] = {"processed": 0, "matched": 0, "discovered": 0, "errors": []}

        for receipt_id in self._unmatched_receipt_ids():
            results["processed"] += 1
            try:
                if self.match(receipt_id).matched:
                    results["matched"] += 1
                elif Config.FUZZY_DISCOVERY_ENABLED and self.discover_payout(receipt_id).matched:
                    results["discovered"] += 1
            except Exception as e:
                results["errors"].append(receipt_id)
                logger.error(f"❌ RECEIPT_MATCH_ERROR: receipt {receipt_id}: {e}")

        if results["matched"] or results["discovered"]:
            logger.info(
                f"📊 RECEIPT_SWEEP: processed={results['processed']} matched={results['matched']} "
                f"discovered={results['discovered']}"
            )
        return results
