"""
Collaborator interfaces consumed by the settlement engine.

The HTTP clients for the trading platform, the settlement platform and the
mail inbox live outside this package; the engine only depends on the typed
operations and records declared here.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol


# ============ RECORDS ============


@dataclass
class AdvertisementParams:
    """Parameters for a sell advertisement on the trading platform"""

    price: Decimal
    quantity: Decimal
    min_amount: Decimal
    max_amount: Decimal
    payment_method_id: str
    token_id: str = "USDT"
    currency_id: str = "RUB"
    payment_period_minutes: int = 15
    remark: str = ""


@dataclass
class OrderInfo:
    """Trade order as reported by the trading platform"""

    order_id: str
    status: int
    item_id: Optional[str] = None
    price: Optional[Decimal] = None
    amount: Optional[Decimal] = None


@dataclass
class PlatformChatMessage:
    message_id: str
    order_id: str
    sender_id: str
    content: str
    created_at: Optional[datetime] = None


@dataclass
class PayoutRecord:
    """Payout as delivered by the settlement platform feed"""

    gate_payout_id: str
    wallet: str
    amount: Decimal
    bank_name: str
    status: int
    created_at: datetime
    bank_label: str = ""
    approved_at: Optional[datetime] = None


@dataclass
class ParsedReceipt:
    """Structured fields extracted from a bank receipt PDF"""

    source_email_id: str
    amount: Optional[Decimal] = None
    transfer_datetime: Optional[datetime] = None
    transfer_type: Optional[str] = None
    status: Optional[str] = None
    recipient_bank: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_card: Optional[str] = None
    parse_error: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def parse_ok(self) -> bool:
        return self.parse_error is None


# ============ CLIENTS ============


class TradingPlatformClient(Protocol):
    """Protocol for the trading platform (Bybit P2P) API, one call per account"""

    async def create_advertisement(self, account_id: str, params: AdvertisementParams) -> str:
        """Post a sell advertisement and return its external id"""
        ...

    async def cancel_advertisement(self, account_id: str, ad_id: str) -> None:
        ...

    async def count_active_advertisements(self, account_id: str) -> int:
        """Live count of online advertisements for the account"""
        ...

    async def get_payment_methods(self, account_id: str) -> Dict[str, str]:
        """Payment method name (SBP/Tinkoff) -> platform payment id"""
        ...

    async def get_order_details(self, account_id: str, order_id: str) -> OrderInfo:
        ...

    async def list_active_orders(self, account_id: str) -> List[OrderInfo]:
        ...

    async def list_orders(self, account_id: str, status: int) -> List[OrderInfo]:
        ...

    async def get_chat_messages(self, account_id: str, order_id: str) -> List[PlatformChatMessage]:
        ...

    async def send_chat_message(self, account_id: str, order_id: str, content: str) -> None:
        ...

    async def release_funds(self, account_id: str, order_id: str) -> None:
        """Release escrowed crypto to the buyer; raises OrderAlreadyFinished if done"""
        ...


class SettlementPlatformClient(Protocol):
    """Protocol for the settlement platform (Gate): payout feed and payout approval"""

    async def fetch_payouts(self) -> List[PayoutRecord]:
        """Recent payouts; re-delivery of known ids is expected"""
        ...

    async def approve_payout(self, gate_payout_id: str, receipt: Optional[ParsedReceipt]) -> None:
        """
        Confirm the payout as paid, attaching the matched receipt.

        ``receipt`` is None for payments confirmed by an operator. An already
        approved payout must not raise.
        """
        ...
