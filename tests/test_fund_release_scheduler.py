"""
Fund Release Scheduler Tests
Safety delay, at-most-once release, failure handling
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models import Payout, Receipt, ReceiptMatchMode, Transaction, TransactionStatus
from services.fund_release_scheduler import FundReleaseScheduler
from services.settlement_errors import OrderAlreadyFinished, PlatformAPIError
from utils.datetime_helpers import get_naive_utc_now
from utils.transaction_state_machine import TransactionStateMachine


@pytest.fixture
def scheduler(trading_client, session_factory):
    return FundReleaseScheduler(trading_client, session_factory, delay_seconds=120, call_timeout=1)


class TestSafetyDelay:

    @pytest.mark.asyncio
    async def test_selected_only_after_delay_and_exactly_once(self, scheduler, seed, trading_client):
        matched_at = get_naive_utc_now()
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=matched_at)

        assert scheduler.select_due(matched_at + timedelta(minutes=1)) == []

        later = matched_at + timedelta(minutes=2, seconds=1)
        assert scheduler.select_due(later) == [ids["transaction_id"]]

        results = await scheduler.sweep(later)
        assert results["released"] == 1
        assert scheduler.select_due(later) == []
        assert (await scheduler.sweep(later))["due"] == 0
        assert trading_client.release_funds.await_count == 1

    def test_payment_received_uses_approval_time(self, scheduler, seed):
        approved_at = get_naive_utc_now()
        ids = seed.trade(status=TransactionStatus.PAYMENT_RECEIVED, order_id="order-1", approved_at=approved_at)

        assert scheduler.select_due(approved_at + timedelta(seconds=119)) == []
        assert scheduler.select_due(approved_at + timedelta(seconds=121)) == [ids["transaction_id"]]

    def test_other_states_never_selected(self, scheduler, seed):
        long_ago = get_naive_utc_now() - timedelta(days=1)
        seed.trade(status=TransactionStatus.WAITING_PAYMENT, order_id="o-1", receipt_received_at=long_ago)
        seed.trade(status=TransactionStatus.COMPLETED, order_id="o-2", receipt_received_at=long_ago)

        assert scheduler.select_due() == []


class TestRelease:

    @pytest.mark.asyncio
    async def test_successful_release_completes(self, scheduler, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=get_naive_utc_now())

        result = await scheduler.release(ids["transaction_id"])

        assert result.released
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "completed"
        assert tx.completed_at is not None

    @pytest.mark.asyncio
    async def test_platform_error_fails_without_retry(self, scheduler, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=get_naive_utc_now() - timedelta(hours=1))
        trading_client.release_funds.side_effect = PlatformAPIError("insufficient balance", ret_code=912100)

        first = await scheduler.sweep()
        second = await scheduler.sweep()

        assert first["failed"] == 1
        assert second["due"] == 0
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "failed"
        assert "insufficient balance" in tx.failure_reason
        assert trading_client.release_funds.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_fails_transaction(self, seed, session_factory, trading_client):
        scheduler = FundReleaseScheduler(trading_client, session_factory, call_timeout=0.01)
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=get_naive_utc_now())

        async def hang(account_id, order_id):
            await asyncio.sleep(1)

        trading_client.release_funds.side_effect = hang

        result = await scheduler.release(ids["transaction_id"])

        assert result.error == "timeout"
        assert seed.get(Transaction, ids["transaction_id"]).status == "failed"

    @pytest.mark.asyncio
    async def test_already_finished_order_counts_as_released(self, scheduler, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=get_naive_utc_now())
        trading_client.release_funds.side_effect = OrderAlreadyFinished("order finished")

        result = await scheduler.release(ids["transaction_id"])

        assert result.released
        assert seed.get(Transaction, ids["transaction_id"]).status == "completed"

    @pytest.mark.asyncio
    async def test_missing_order_fails(self, scheduler, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, receipt_received_at=get_naive_utc_now())

        result = await scheduler.release(ids["transaction_id"])

        assert result.error == "no_order"
        assert seed.get(Transaction, ids["transaction_id"]).status == "failed"
        trading_client.release_funds.assert_not_called()

    @pytest.mark.asyncio
    async def test_claimed_release_not_repeated(self, scheduler, seed, trading_client):
        ids = seed.trade(status=TransactionStatus.RELEASE_MONEY, order_id="order-1")

        result = await scheduler.release(ids["transaction_id"])

        assert not result.released
        trading_client.release_funds.assert_not_called()

    @pytest.mark.asyncio
    async def test_state_change_during_release_flagged_for_review(self, scheduler, seed, session_factory,
                                                                  trading_client):
        ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                         receipt_received_at=get_naive_utc_now())

        async def cancelled_meanwhile(account_id, order_id):
            with session_factory() as session:
                TransactionStateMachine.transition(session, ids["transaction_id"], TransactionStatus.CANCELLED)
                session.commit()

        trading_client.release_funds.side_effect = cancelled_meanwhile

        result = await scheduler.release(ids["transaction_id"])

        assert result.released
        assert result.status == "cancelled"
        assert result.error == "state_changed"
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "cancelled"
        assert tx.needs_attention is True
        assert "order-1" in tx.attention_reason


@pytest.fixture
def settlement_client():
    return AsyncMock()


@pytest.fixture
def approving_scheduler(trading_client, settlement_client, session_factory):
    return FundReleaseScheduler(trading_client, session_factory, call_timeout=1,
                                settlement_client=settlement_client)


def _matched_trade(seed, session_factory, gate_payout_id="gate-77"):
    ids = seed.trade(status=TransactionStatus.RECEIPT_RECEIVED, order_id="order-1",
                     receipt_received_at=get_naive_utc_now(),
                     payout_kwargs={"gate_payout_id": gate_payout_id})
    with session_factory() as session:
        session.add(Receipt(
            source_email_id="mail-1", amount=Decimal("5000"), transfer_type="TO_TBANK", status="SUCCESS",
            recipient_phone="9991234567", payout_id=ids["payout_id"], match_mode=ReceiptMatchMode.EXACT.value,
            matched_at=get_naive_utc_now(),
        ))
        session.commit()
    return ids


class TestPayoutApproval:

    @pytest.mark.asyncio
    async def test_payout_approved_with_receipt_before_release(self, approving_scheduler, seed, session_factory,
                                                               settlement_client, trading_client):
        ids = _matched_trade(seed, session_factory)

        result = await approving_scheduler.release(ids["transaction_id"])

        assert result.released
        settlement_client.approve_payout.assert_awaited_once()
        gate_payout_id, receipt = settlement_client.approve_payout.await_args.args
        assert gate_payout_id == "gate-77"
        assert receipt.source_email_id == "mail-1"
        assert receipt.amount == Decimal("5000")
        payout = seed.get(Payout, ids["payout_id"])
        assert payout.approved_at is not None
        assert payout.status == 7
        trading_client.release_funds.assert_awaited_once()
        assert seed.get(Transaction, ids["transaction_id"]).status == "completed"

    @pytest.mark.asyncio
    async def test_approval_failure_fails_without_release(self, approving_scheduler, seed, session_factory,
                                                          settlement_client, trading_client):
        ids = _matched_trade(seed, session_factory)
        settlement_client.approve_payout.side_effect = RuntimeError("receipt rejected")

        result = await approving_scheduler.release(ids["transaction_id"])

        assert not result.released
        assert result.error == "approval_failed"
        tx = seed.get(Transaction, ids["transaction_id"])
        assert tx.status == "failed"
        assert "receipt rejected" in tx.failure_reason
        assert seed.get(Payout, ids["payout_id"]).approved_at is None
        trading_client.release_funds.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_approved_payout_not_approved_again(self, approving_scheduler, seed, session_factory,
                                                              settlement_client, trading_client):
        ids = _matched_trade(seed, session_factory)
        with session_factory() as session:
            session.get(Payout, ids["payout_id"]).approved_at = get_naive_utc_now()
            session.commit()

        result = await approving_scheduler.release(ids["transaction_id"])

        assert result.released
        settlement_client.approve_payout.assert_not_called()

    @pytest.mark.asyncio
    async def test_operator_confirmed_payment_approved_without_receipt(self, approving_scheduler, seed,
                                                                       settlement_client):
        ids = seed.trade(status=TransactionStatus.PAYMENT_RECEIVED, order_id="order-1",
                         approved_at=get_naive_utc_now())

        result = await approving_scheduler.release(ids["transaction_id"])

        assert result.released
        settlement_client.approve_payout.assert_awaited_once()
        assert settlement_client.approve_payout.await_args.args[1] is None
