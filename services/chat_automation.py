"""
Chat Automation Service - drives the trade-order chat after an order is bound

chat_step 0: nothing sent yet
chat_step 1: terms question sent, waiting for the counterparty's answer
chat_step 2: payment details sent (transaction moves to waiting_payment)
"""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from config import Config
from database import managed_session
from models import (
    Advertisement, BybitAccount, ChatMessage, SenderRole, Transaction, TransactionStatus,
)
from services.platform_clients import TradingPlatformClient
from utils.datetime_helpers import ensure_naive_datetime
from utils.transaction_state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)

STEP_NOT_STARTED = 0
STEP_TERMS_SENT = 1
STEP_DETAILS_SENT = 2

_WORD_RE = re.compile(r"[\w+]+")


def _contains_phrase(answer: str, words: set, phrases: List[str]) -> bool:
    for phrase in phrases:
        if " " in phrase:
            if phrase in answer:
                return True
        elif phrase in words:
            return True
    return False


def classify_answer(text: str) -> Optional[bool]:
    """True for agreement, False for refusal, None when unclear"""
    answer = (text or "").lower().strip()
    words = set(_WORD_RE.findall(answer))
    if _contains_phrase(answer, words, Config.CHAT_NEGATIVE_ANSWERS):
        return False
    if _contains_phrase(answer, words, Config.CHAT_POSITIVE_ANSWERS):
        return True
    return None


def build_payment_details(transaction: Transaction) -> List[str]:
    payout = transaction.payout
    bank = payout.bank_label or payout.bank_name
    return [
        f"Strictly to {bank} {payout.wallet}",
        f"Amount: {payout.amount} {Config.AD_FIAT_CURRENCY}",
        Config.RECEIPT_EMAIL,
        Config.CHAT_PAYMENT_INSTRUCTIONS,
    ]


class ChatAutomationService:
    """Consumes counterparty chat messages exactly once and answers them"""

    def __init__(self, client: TradingPlatformClient, session_factory=None,
                 call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS, batch_size: int = 100):
        self.client = client
        self.session_factory = session_factory
        self.call_timeout = call_timeout
        self.batch_size = batch_size
        # Webhook dispatch and the scheduled sweep share this instance
        self._processing_lock = asyncio.Lock()

    async def _send(self, account_id: str, order_id: str, content: str) -> None:
        await asyncio.wait_for(
            self.client.send_chat_message(account_id, order_id, content), timeout=self.call_timeout
        )

    # ------------------------------------------------------------------
    # Ingestion (push event and poll path)
    # ------------------------------------------------------------------

    def ingest_message(self, order_id: str, external_message_id: str, sender_id: str,
                       content: str, created_at: Optional[datetime] = None) -> Optional[int]:
        """Store a chat message once per external id; returns the row id or None if the order is unknown"""
        try:
            with managed_session(self.session_factory) as session:
                existing = session.execute(
                    select(ChatMessage.id).where(ChatMessage.external_message_id == external_message_id)
                ).scalar_one_or_none()
                if existing is not None:
                    return existing

                tx = session.execute(
                    select(Transaction)
                    .options(joinedload(Transaction.advertisement).joinedload(Advertisement.account))
                    .where(Transaction.order_id == order_id)
                ).scalar_one_or_none()
                if tx is None:
                    logger.debug(f"⏭️ CHAT_MESSAGE_UNBOUND: order {order_id} has no transaction yet")
                    return None

                our_user_id = tx.advertisement.account.platform_user_id
                role = SenderRole.US if our_user_id and str(sender_id) == str(our_user_id) else SenderRole.COUNTERPARTY
                message = ChatMessage(
                    transaction_id=tx.id,
                    external_message_id=external_message_id,
                    sender_role=role.value,
                    body=content or "",
                    is_processed=role == SenderRole.US,
                )
                if created_at is not None:
                    message.created_at = ensure_naive_datetime(created_at)
                session.add(message)
                session.flush()
                return message.id
        except IntegrityError:
            with managed_session(self.session_factory) as session:
                return session.execute(
                    select(ChatMessage.id).where(ChatMessage.external_message_id == external_message_id)
                ).scalar_one_or_none()

    async def sync_chats(self) -> Dict[str, Any]:
        """Fetch transcripts for bound, non-terminal orders; accounts run concurrently"""
        active = [s.value for s in TransactionStateMachine.ACTIVE_STATES]
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Transaction.order_id, Advertisement.bybit_account_id)
                .join(Advertisement, Advertisement.id == Transaction.advertisement_id)
                .where(Transaction.order_id.is_not(None), Transaction.status.in_(active))
            ).all()
            accounts = dict(session.execute(select(BybitAccount.id, BybitAccount.account_id)).all())

        orders_by_account: Dict[str, List[str]] = defaultdict(list)
        for order_id, account_pk in rows:
            orders_by_account[accounts[account_pk]].append(order_id)

        results = {"accounts": len(orders_by_account), "messages": 0, "errors": []}

        async def sync_account(account_id: str, order_ids: List[str]) -> int:
            seen = 0
            for order_id in order_ids:
                messages = await self.client.get_chat_messages(account_id, order_id)
                for msg in messages:
                    if self.ingest_message(order_id, msg.message_id, msg.sender_id, msg.content, msg.created_at):
                        seen += 1
            return seen

        outcomes = await asyncio.gather(
            *(asyncio.wait_for(sync_account(acc, orders), timeout=self.call_timeout)
              for acc, orders in orders_by_account.items()),
            return_exceptions=True,
        )
        for account_id, outcome in zip(orders_by_account, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"❌ CHAT_SYNC_ERROR: Account {account_id}: {outcome!r}")
                results["errors"].append(account_id)
            else:
                results["messages"] += outcome
        return results

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    def _load(self, session, transaction_id: int) -> Optional[Transaction]:
        return session.execute(
            select(Transaction)
            .options(
                joinedload(Transaction.payout),
                joinedload(Transaction.advertisement).joinedload(Advertisement.account),
            )
            .where(Transaction.id == transaction_id)
        ).scalar_one_or_none()

    async def start(self, transaction_id: int) -> bool:
        """Send the terms question once an order is bound (chat_step 0 -> 1)"""
        with managed_session(self.session_factory) as session:
            tx = self._load(session, transaction_id)
            if tx is None or tx.order_id is None:
                return False
            if tx.chat_step != STEP_NOT_STARTED or TransactionStateMachine.is_terminal_state(tx.status):
                return False
            account_id = tx.advertisement.account.account_id
            order_id = tx.order_id

        await self._send(account_id, order_id, Config.CHAT_GREETING)

        with managed_session(self.session_factory) as session:
            advanced = TransactionStateMachine.assign_fields(
                session, transaction_id, TransactionStateMachine.ACTIVE_STATES,
                where=[Transaction.chat_step == STEP_NOT_STARTED], chat_step=STEP_TERMS_SENT,
            )
        if advanced:
            logger.info(f"💬 CHAT_STARTED: Transaction {transaction_id} order {order_id} terms question sent")
        return advanced

    async def _handle_message(self, message_id: int, transaction_id: int, body: str) -> None:
        with managed_session(self.session_factory) as session:
            tx = self._load(session, transaction_id)
            if tx is None or TransactionStateMachine.is_terminal_state(tx.status):
                step = None
            else:
                step = tx.chat_step
                account_id = tx.advertisement.account.account_id
                order_id = tx.order_id
                details = build_payment_details(tx)

        if step == STEP_NOT_STARTED:
            await self.start(transaction_id)
        elif step == STEP_TERMS_SENT:
            verdict = classify_answer(body)
            if verdict is True:
                for line in details:
                    await self._send(account_id, order_id, line)
                with managed_session(self.session_factory) as session:
                    result = TransactionStateMachine.transition(
                        session, transaction_id, TransactionStatus.WAITING_PAYMENT,
                        expected_from=[TransactionStatus.PENDING, TransactionStatus.CHAT_STARTED],
                        where=[Transaction.chat_step == STEP_TERMS_SENT],
                        chat_step=STEP_DETAILS_SENT,
                    )
                    if not result.applied:
                        TransactionStateMachine.assign_fields(
                            session, transaction_id, TransactionStateMachine.ACTIVE_STATES,
                            where=[Transaction.chat_step == STEP_TERMS_SENT], chat_step=STEP_DETAILS_SENT,
                        )
                logger.info(f"💳 PAYMENT_DETAILS_SENT: Transaction {transaction_id} order {order_id}")
            elif verdict is False:
                with managed_session(self.session_factory) as session:
                    TransactionStateMachine.transition(
                        session, transaction_id, TransactionStatus.FAILED,
                        expected_from=[TransactionStatus.PENDING, TransactionStatus.CHAT_STARTED],
                        failure_reason=f"Counterparty refused terms: {body[:200]}",
                    )
                logger.info(f"🚫 TERMS_REFUSED: Transaction {transaction_id} order {order_id}")
            else:
                await self._send(account_id, order_id, Config.CHAT_GREETING)
                logger.info(f"❓ UNCLEAR_ANSWER: Transaction {transaction_id}, question repeated")

        with managed_session(self.session_factory) as session:
            session.execute(
                update(ChatMessage)
                .where(ChatMessage.id == message_id, ChatMessage.is_processed.is_(False))
                .values(is_processed=True)
            )

    async def process_unprocessed(self) -> Dict[str, Any]:
        """Consume counterparty messages in arrival order; a failed message stays unprocessed"""
        async with self._processing_lock:
            return await self._process_pending()

    async def _process_pending(self) -> Dict[str, Any]:
        results = {"processed": 0, "errors": []}
        with managed_session(self.session_factory) as session:
            pending = session.execute(
                select(ChatMessage.id, ChatMessage.transaction_id, ChatMessage.body)
                .where(
                    ChatMessage.is_processed.is_(False),
                    ChatMessage.sender_role == SenderRole.COUNTERPARTY.value,
                )
                .order_by(ChatMessage.id)
                .limit(self.batch_size)
            ).all()

        failed_transactions = set()
        for message_id, transaction_id, body in pending:
            if transaction_id in failed_transactions:
                continue
            try:
                await self._handle_message(message_id, transaction_id, body)
                results["processed"] += 1
            except Exception as e:
                # Later messages of the same chat wait until this one succeeds
                failed_transactions.add(transaction_id)
                results["errors"].append(message_id)
                logger.error(f"❌ CHAT_PROCESSING_ERROR: Message {message_id} transaction {transaction_id}: {e}")
        return results
