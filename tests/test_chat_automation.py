"""
Chat Automation Tests
Message ingestion, answer classification, exactly-once processing
"""

import asyncio

import pytest
from sqlalchemy import func, select

from models import ChatMessage, Transaction, TransactionStatus
from services.chat_automation import (
    STEP_DETAILS_SENT, STEP_TERMS_SENT, ChatAutomationService, classify_answer,
)
from services.platform_clients import PlatformChatMessage


@pytest.fixture
def chat(trading_client, session_factory):
    return ChatAutomationService(trading_client, session_factory, call_timeout=1)


def _messages(session_factory, transaction_id):
    with session_factory() as session:
        return session.execute(
            select(ChatMessage).where(ChatMessage.transaction_id == transaction_id).order_by(ChatMessage.id)
        ).scalars().all()


class TestClassifyAnswer:

    @pytest.mark.parametrize("text", ["Да", "yes!", "ок, согласен", "+", "Хорошо"])
    def test_positive(self, text):
        assert classify_answer(text) is True

    @pytest.mark.parametrize("text", ["нет", "No", "я не согласен", "отказ"])
    def test_negative(self, text):
        assert classify_answer(text) is False

    @pytest.mark.parametrize("text", ["", "what bank?", "know what"])
    def test_unclear(self, text):
        assert classify_answer(text) is None


class TestIngestMessage:

    def test_same_external_id_stored_once(self, chat, seed, session_factory):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1")

        first = chat.ingest_message("order-1", "m-1", "buyer-9", "да")
        second = chat.ingest_message("order-1", "m-1", "buyer-9", "да")

        assert first == second
        assert len(_messages(session_factory, ids["transaction_id"])) == 1

    def test_own_messages_stored_as_processed(self, chat, seed, session_factory):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1")

        chat.ingest_message("order-1", "m-1", "user-1", "Hello!")

        [message] = _messages(session_factory, ids["transaction_id"])
        assert message.sender_role == "us"
        assert message.is_processed is True

    def test_unknown_order_returns_none(self, chat):
        assert chat.ingest_message("order-x", "m-1", "buyer", "hi") is None


class TestConversation:

    @pytest.mark.asyncio
    async def test_start_sends_greeting_once(self, chat, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1")

        assert await chat.start(ids["transaction_id"]) is True
        assert await chat.start(ids["transaction_id"]) is False

        assert trading_client.send_chat_message.await_count == 1
        assert seed.get(Transaction, ids["transaction_id"]).chat_step == STEP_TERMS_SENT

    @pytest.mark.asyncio
    async def test_positive_answer_sends_details_and_waits_for_payment(self, chat, seed, session_factory,
                                                                       trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "да, согласен")

        results = await chat.process_unprocessed()

        assert results["processed"] == 1
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "waiting_payment"
        assert tx.chat_step == STEP_DETAILS_SENT
        sent = [call.args[2] for call in trading_client.send_chat_message.await_args_list]
        assert any("+79991234567" in line for line in sent)
        assert any("5000" in line for line in sent)
        assert all(m.is_processed for m in _messages(session_factory, ids["transaction_id"]))

    @pytest.mark.asyncio
    async def test_messages_processed_exactly_once(self, chat, seed, trading_client):
        seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "да")

        await chat.process_unprocessed()
        sends_after_first = trading_client.send_chat_message.await_count
        second = await chat.process_unprocessed()

        assert second["processed"] == 0
        assert trading_client.send_chat_message.await_count == sends_after_first

    @pytest.mark.asyncio
    async def test_overlapping_runs_answer_a_message_once(self, chat, seed, trading_client):
        seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "да")

        async def slow_send(*args):
            await asyncio.sleep(0)

        trading_client.send_chat_message.side_effect = slow_send

        first, second = await asyncio.gather(chat.process_unprocessed(), chat.process_unprocessed())

        assert first["processed"] + second["processed"] == 1
        # Payment details are four lines, sent once
        assert trading_client.send_chat_message.await_count == 4

    @pytest.mark.asyncio
    async def test_refusal_fails_transaction(self, chat, seed):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "нет")

        await chat.process_unprocessed()

        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "failed"
        assert "refused" in tx.failure_reason

    @pytest.mark.asyncio
    async def test_unclear_answer_repeats_question(self, chat, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "which bank?")

        await chat.process_unprocessed()

        assert trading_client.send_chat_message.await_count == 1
        assert seed.get(Transaction, ids["transaction_id"]).chat_step == STEP_TERMS_SENT

    @pytest.mark.asyncio
    async def test_send_failure_keeps_message_for_retry(self, chat, seed, session_factory, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1", chat_step=STEP_TERMS_SENT)
        chat.ingest_message("order-1", "m-1", "buyer-9", "да")
        chat.ingest_message("order-1", "m-2", "buyer-9", "ok?")
        trading_client.send_chat_message.side_effect = ConnectionError("chat down")

        results = await chat.process_unprocessed()

        assert results["processed"] == 0
        assert len(results["errors"]) == 1
        assert not any(m.is_processed for m in _messages(session_factory, ids["transaction_id"]))
        assert seed.get(Transaction, ids["transaction_id"]).chat_step == STEP_TERMS_SENT


class TestSyncChats:

    @pytest.mark.asyncio
    async def test_poll_path_stores_transcript(self, chat, seed, session_factory, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1")
        trading_client.get_chat_messages.return_value = [
            PlatformChatMessage(message_id="m-1", order_id="order-1", sender_id="user-1", content="Hello!"),
            PlatformChatMessage(message_id="m-2", order_id="order-1", sender_id="buyer-9", content="да"),
        ]

        results = await chat.sync_chats()
        await chat.sync_chats()

        assert results["messages"] == 2
        with session_factory() as session:
            count = session.execute(
                select(func.count()).select_from(ChatMessage)
                .where(ChatMessage.transaction_id == ids["transaction_id"])
            ).scalar_one()
        assert count == 2
