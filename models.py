"""
Settlement Reconciliation Engine - Database Schema
==================================================

Schema for the cross-platform P2P settlement workflow:
- Payouts ingested from the settlement platform (Gate)
- Sell advertisements and trade orders on the trading platform (Bybit)
- The internal Transaction aggregate tying payout, ad, order and receipt together
- Chat transcripts and parsed bank receipts

One-to-one relationships are enforced by unique constraints, never by locks.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, func
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionStatus(Enum):
    """Transaction lifecycle states"""
    PENDING = "pending"                        # Advertisement posted, no order yet
    CHAT_STARTED = "chat_started"              # Order bound, chat automation running
    WAITING_PAYMENT = "waiting_payment"        # Payment details sent to counterparty
    PAYMENT_RECEIVED = "payment_received"      # Payment confirmed by operator/platform approval
    PAYMENT_CONFIRMED = "payment_confirmed"    # Counterparty marked the order paid
    RECEIPT_RECEIVED = "receipt_received"      # Bank receipt matched
    RELEASE_MONEY = "release_money"            # Release claimed, external call in flight
    COMPLETED = "completed"
    APPEAL = "appeal"                          # Dispute opened on the trading platform
    CANCELLED = "cancelled"
    FAILED = "failed"
    BLACKLISTED = "blacklisted"


class PaymentMethod(Enum):
    """Payment methods offered on advertisements"""
    SBP = "SBP"
    TINKOFF = "Tinkoff"

    @property
    def opposite(self) -> "PaymentMethod":
        return PaymentMethod.TINKOFF if self is PaymentMethod.SBP else PaymentMethod.SBP


class TransferType(Enum):
    """How the bank transfer on a receipt was routed"""
    TO_TBANK = "TO_TBANK"    # Transfer to a client of the platform's own bank
    TO_CARD = "TO_CARD"      # Direct card transfer
    BY_PHONE = "BY_PHONE"    # Phone-routed (fast payment system) transfer


class ReceiptStatus(Enum):
    """Transfer status printed on a receipt"""
    SUCCESS = "SUCCESS"
    IN_PROGRESS = "IN_PROGRESS"
    FAILED = "FAILED"


class SenderRole(Enum):
    US = "us"
    COUNTERPARTY = "counterparty"


class ReceiptMatchMode(Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


# ============================================================================
# MODELS
# ============================================================================

class BybitAccount(Base):
    """Trading platform account used to post advertisements"""
    __tablename__ = "bybit_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    platform_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    advertisements = relationship("Advertisement", back_populates="account")

    def __repr__(self):
        return f"<BybitAccount(id={self.id}, account_id='{self.account_id}', active={self.is_active})>"


class Payout(Base):
    """Money-transfer request ingested from the settlement platform"""
    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gate_payout_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    bank_label: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    advertisement = relationship("Advertisement", back_populates="payout", uselist=False)
    transaction = relationship("Transaction", back_populates="payout", uselist=False)

    def __repr__(self):
        return f"<Payout(id={self.id}, gate_payout_id='{self.gate_payout_id}', amount={self.amount})>"


class Advertisement(Base):
    """Sell offer on the trading platform backing exactly one payout"""
    __tablename__ = "advertisements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bybit_ad_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    payout_id: Mapped[int] = mapped_column(ForeignKey("payouts.id"), unique=True, nullable=False)
    bybit_account_id: Mapped[int] = mapped_column(ForeignKey("bybit_accounts.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    payout = relationship("Payout", back_populates="advertisement")
    account = relationship("BybitAccount", back_populates="advertisements")
    transaction = relationship("Transaction", back_populates="advertisement", uselist=False)

    __table_args__ = (
        Index("ix_advertisements_account_active", "bybit_account_id", "is_active"),
    )

    def __repr__(self):
        return f"<Advertisement(id={self.id}, bybit_ad_id='{self.bybit_ad_id}', active={self.is_active})>"


class Transaction(Base):
    """Internal aggregate representing one real-world trade"""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payout_id: Mapped[int] = mapped_column(ForeignKey("payouts.id"), unique=True, nullable=False)
    advertisement_id: Mapped[int] = mapped_column(ForeignKey("advertisements.id"), unique=True, nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    chat_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    receipt_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attention_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    payout = relationship("Payout", back_populates="transaction")
    advertisement = relationship("Advertisement", back_populates="transaction")
    chat_messages = relationship("ChatMessage", back_populates="transaction", order_by="ChatMessage.id")

    def __repr__(self):
        return f"<Transaction(id={self.id}, payout_id={self.payout_id}, order_id='{self.order_id}', status='{self.status}')>"


class ChatMessage(Base):
    """Message exchanged on the trade-order chat"""
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False, index=True)
    external_message_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sender_role: Mapped[str] = mapped_column(String(16), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    transaction = relationship("Transaction", back_populates="chat_messages")


class Receipt(Base):
    """Parsed bank transfer confirmation delivered by the mail ingestion"""
    __tablename__ = "receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_email_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    transfer_datetime: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    transfer_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    recipient_bank: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    recipient_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    recipient_card: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    parse_ok: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    parse_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payout_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payouts.id"), nullable=True, index=True)
    match_mode: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    payout = relationship("Payout")


class BlacklistedWallet(Base):
    """Wallets (phone/card) that must never receive an advertisement"""
    __tablename__ = "blacklisted_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint("wallet", name="uq_blacklisted_wallet"),
    )
