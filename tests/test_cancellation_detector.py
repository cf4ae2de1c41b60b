"""
Cancellation Detector Tests
Live status is authoritative; chat phrases need platform confirmation
"""

import pytest

from models import ChatMessage, Transaction, TransactionStatus
from services.cancellation_detector import CancellationDetector, contains_cancellation_phrase
from services.platform_clients import OrderInfo, PlatformChatMessage


@pytest.fixture
def detector(trading_client, session_factory):
    return CancellationDetector(trading_client, session_factory, call_timeout=1)


def _add_message(session_factory, transaction_id, body, external_id="m-1"):
    with session_factory() as session:
        session.add(ChatMessage(
            transaction_id=transaction_id, external_message_id=external_id,
            sender_role="counterparty", body=body, is_processed=True,
        ))
        session.commit()


def _live_status(trading_client, status):
    trading_client.get_order_details.side_effect = (
        lambda account_id, order_id: OrderInfo(order_id=order_id, status=status)
    )


class TestCheckTransaction:

    @pytest.mark.asyncio
    async def test_live_cancelled_status_cancels(self, detector, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="order-1")
        _live_status(trading_client, 40)

        assert await detector.check_transaction(ids["transaction_id"]) is True
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "cancelled"
        assert tx.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_phrase_with_active_live_status_does_not_cancel(self, detector, seed, session_factory,
                                                                   trading_client):
        ids = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="order-1")
        _add_message(session_factory, ids["transaction_id"], "Your order has been cancelled")
        _live_status(trading_client, 10)

        assert await detector.check_transaction(ids["transaction_id"]) is False
        assert seed.get(Transaction, ids["transaction_id"]).status == "waiting_payment"
        # Initial read plus the re-verification
        assert trading_client.get_order_details.await_count == 2

    @pytest.mark.asyncio
    async def test_phrase_confirmed_by_second_read_cancels(self, detector, seed, session_factory, trading_client):
        ids = seed.trade(status=TransactionStatus.CHAT_STARTED, order_id="order-1")
        statuses = iter([10, 40])
        trading_client.get_order_details.side_effect = (
            lambda account_id, order_id: OrderInfo(order_id=order_id, status=next(statuses))
        )
        trading_client.get_chat_messages.return_value = [
            PlatformChatMessage(message_id="sys-1", order_id="order-1", sender_id="system",
                                content="Ваш заказ был отменен")
        ]

        assert await detector.check_transaction(ids["transaction_id"]) is True
        assert seed.get(Transaction, ids["transaction_id"]).status == "cancelled"

    @pytest.mark.asyncio
    async def test_no_signal_leaves_transaction(self, detector, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="order-1")

        assert await detector.check_transaction(ids["transaction_id"]) is False
        assert seed.get(Transaction, ids["transaction_id"]).status == "waiting_payment"

    @pytest.mark.asyncio
    async def test_terminal_transaction_skipped(self, detector, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.COMPLETED, order_id="order-1")
        _live_status(trading_client, 40)

        assert await detector.check_transaction(ids["transaction_id"]) is False
        assert seed.get(Transaction, ids["transaction_id"]).status == "completed"
        trading_client.get_order_details.assert_not_called()


class TestSweep:

    @pytest.mark.asyncio
    async def test_errors_isolated_per_transaction(self, detector, seed, trading_client):
        account_pk = seed.account(account_id="acc-a")
        broken = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="order-bad", account_pk=account_pk)
        cancelled = seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="order-ok", account_pk=account_pk)

        def details(account_id, order_id):
            if order_id == "order-bad":
                raise ConnectionError("boom")
            return OrderInfo(order_id=order_id, status=40)

        trading_client.get_order_details.side_effect = details

        results = await detector.sweep()

        assert results["errors"] == [broken["transaction_id"]]
        assert results["cancelled"] == 1
        assert seed.get(Transaction, cancelled["transaction_id"]).status == "cancelled"

    @pytest.mark.asyncio
    async def test_unbound_transactions_not_checked(self, detector, seed, trading_client):
        seed.trade(status=TransactionStatus.PENDING)

        results = await detector.sweep()

        assert results["checked"] == 0


def test_phrase_detection_is_case_insensitive():
    assert contains_cancellation_phrase(["ORDER CANCELLED by buyer"])
    assert not contains_cancellation_phrase(["payment sent", None])
