"""
Shared fixtures for the settlement engine test suite

Key Components:
1. In-memory SQLite database, one fresh schema per test
2. AsyncMock trading-platform client with sensible defaults
3. Seed helpers for accounts, payouts, advertisements and transactions
"""

import os
import sys

# Configuration is read at import time; point it at SQLite before anything loads
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import itertools
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import (
    Advertisement, Base, BybitAccount, PaymentMethod, Payout, Transaction, TransactionStatus,
)
from services.platform_clients import OrderInfo
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def trading_client():
    """Trading platform fake: every call succeeds, ids are sequential"""
    ad_ids = itertools.count(1)
    client = AsyncMock()
    client.create_advertisement.side_effect = lambda account_id, params: f"ad-{next(ad_ids)}"
    client.cancel_advertisement.return_value = None
    client.count_active_advertisements.return_value = 0
    client.get_payment_methods.return_value = {"SBP": "pm-sbp", "Tinkoff": "pm-tinkoff"}
    client.get_order_details.side_effect = lambda account_id, order_id: OrderInfo(order_id=order_id, status=10)
    client.list_active_orders.return_value = []
    client.list_orders.return_value = []
    client.get_chat_messages.return_value = []
    client.send_chat_message.return_value = None
    client.release_funds.return_value = None
    return client


class Seeder:
    """Writes fixture rows directly, bypassing the services under test"""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._ids = itertools.count(1)

    def account(self, account_id: str = "acc-1", platform_user_id: Optional[str] = "user-1",
                is_active: bool = True) -> int:
        with self.session_factory() as session:
            account = BybitAccount(account_id=account_id, platform_user_id=platform_user_id, is_active=is_active)
            session.add(account)
            session.commit()
            return account.id

    def payout(self, amount="5000", wallet: str = "+79991234567", bank_name: str = "tbank",
               status: int = 5, created_at: Optional[datetime] = None, bank_label: str = "",
               gate_payout_id: Optional[str] = None) -> int:
        with self.session_factory() as session:
            payout = Payout(
                gate_payout_id=gate_payout_id or f"gate-{next(self._ids)}",
                wallet=wallet,
                amount=Decimal(amount),
                bank_name=bank_name,
                bank_label=bank_label,
                status=status,
                created_at=created_at or get_naive_utc_now() - timedelta(hours=1),
            )
            session.add(payout)
            session.commit()
            return payout.id

    def advertisement(self, payout_id: int, account_pk: int, bybit_ad_id: Optional[str] = None,
                      payment_method: PaymentMethod = PaymentMethod.SBP, price="85.00",
                      is_active: bool = True) -> int:
        with self.session_factory() as session:
            ad = Advertisement(
                bybit_ad_id=bybit_ad_id or f"seed-ad-{next(self._ids)}",
                payout_id=payout_id,
                bybit_account_id=account_pk,
                price=Decimal(price),
                quantity=Decimal("63.82"),
                payment_method=payment_method.value,
                is_active=is_active,
            )
            session.add(ad)
            session.commit()
            return ad.id

    def transaction(self, payout_id: int, advertisement_id: int,
                    status: TransactionStatus = TransactionStatus.PENDING, order_id: Optional[str] = None,
                    chat_step: int = 0, created_at: Optional[datetime] = None, **fields) -> int:
        now = get_naive_utc_now()
        with self.session_factory() as session:
            tx = Transaction(
                payout_id=payout_id,
                advertisement_id=advertisement_id,
                status=status.value,
                order_id=order_id,
                chat_step=chat_step,
                created_at=created_at or now,
                updated_at=now,
                **fields,
            )
            session.add(tx)
            session.commit()
            return tx.id

    def trade(self, status: TransactionStatus = TransactionStatus.PENDING, order_id: Optional[str] = None,
              account_pk: Optional[int] = None, bybit_ad_id: Optional[str] = None, payout_kwargs=None,
              **fields) -> dict:
        """Payout + advertisement + transaction in one call"""
        if account_pk is None:
            account_pk = self.account(account_id=f"acc-{next(self._ids)}")
        payout_id = self.payout(**(payout_kwargs or {}))
        ad_id = self.advertisement(payout_id, account_pk, bybit_ad_id=bybit_ad_id)
        tx_id = self.transaction(payout_id, ad_id, status=status, order_id=order_id, **fields)
        return {"account_pk": account_pk, "payout_id": payout_id, "advertisement_id": ad_id, "transaction_id": tx_id}

    def get(self, model, pk):
        with self.session_factory() as session:
            row = session.get(model, pk)
            session.expunge_all()
            return row


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
