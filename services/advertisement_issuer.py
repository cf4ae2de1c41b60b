"""
Advertisement Issuer - one sell advertisement and one Transaction per payout

Idempotency comes from unique keys (transactions.payout_id,
advertisements.payout_id, advertisements.bybit_ad_id), never from locks.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config import Config
from database import managed_session
from models import (
    Advertisement, BlacklistedWallet as BlacklistedWalletRow, PaymentMethod, Payout,
    Transaction, TransactionStatus,
)
from services.account_capacity_manager import AccountCapacityManager, AccountSelection
from services.platform_clients import AdvertisementParams, TradingPlatformClient
from services.settlement_errors import (
    BlacklistedWallet, InvalidAmount, PayoutNotFound, ValidationError,
)
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class IssueStatus(Enum):
    EXISTING = "existing"
    CREATED = "created"
    WAITING = "waiting"


@dataclass
class IssueResult:
    status: IssueStatus
    transaction_id: Optional[int] = None
    advertisement_id: Optional[int] = None


def calculate_quantity(amount: Decimal, price: Decimal) -> Decimal:
    """USDT quantity covering the fiat amount plus a fixed buffer"""
    return (Decimal(amount) / Decimal(price) + Config.AD_QUANTITY_BUFFER_USDT).quantize(_CENT, ROUND_HALF_UP)


def default_price_provider(payout: Payout) -> Decimal:
    return Config.DEFAULT_AD_PRICE


def is_wallet_blacklisted(session, wallet: str) -> bool:
    return session.execute(
        select(BlacklistedWalletRow.id).where(BlacklistedWalletRow.wallet == wallet)
    ).first() is not None


class AdvertisementIssuer:
    """Creates the advertisement for a payout and opens its Transaction in ``pending``"""

    def __init__(
        self,
        client: TradingPlatformClient,
        capacity_manager: AccountCapacityManager,
        session_factory=None,
        price_provider: Callable[[Payout], Decimal] = default_price_provider,
        batch_size: int = 50,
    ):
        self.client = client
        self.capacity_manager = capacity_manager
        self.session_factory = session_factory
        self.price_provider = price_provider
        self.batch_size = batch_size

    def _find_existing(self, session, payout_id: int) -> Optional[IssueResult]:
        tx = session.execute(
            select(Transaction).where(Transaction.payout_id == payout_id)
        ).scalar_one_or_none()
        if tx is None:
            return None
        return IssueResult(IssueStatus.EXISTING, tx.id, tx.advertisement_id)

    async def issue_for_payout(
        self, payout_id: int, payment_preference: Optional[PaymentMethod] = None
    ) -> IssueResult:
        """
        Issue the advertisement for a payout.

        Returns:
            IssueResult with status existing (already issued), created, or
            waiting (no account capacity; nothing was written)

        Raises:
            PayoutNotFound, BlacklistedWallet, InvalidAmount: before any side effect
        """
        with managed_session(self.session_factory) as session:
            existing = self._find_existing(session, payout_id)
            if existing is not None:
                logger.info(f"⏭️ ISSUE_SKIPPED: Payout {payout_id} already has Transaction {existing.transaction_id}")
                return existing

            payout = session.get(Payout, payout_id)
            if payout is None:
                raise PayoutNotFound(f"Payout {payout_id} not found")
            if is_wallet_blacklisted(session, payout.wallet):
                logger.warning(f"🚫 BLACKLISTED_WALLET: Payout {payout.gate_payout_id} wallet {payout.wallet}")
                raise BlacklistedWallet(payout.wallet)
            if payout.amount is None or payout.amount <= 0:
                raise InvalidAmount(f"Payout {payout.gate_payout_id} amount {payout.amount} is not positive")

            amount = Decimal(payout.amount)
            price = Decimal(self.price_provider(payout))
            gate_payout_id = payout.gate_payout_id

        if price <= 0:
            raise InvalidAmount(f"Advertisement price {price} is not positive")

        selection = await self.capacity_manager.select_account(payment_preference)
        if not selection:
            logger.info(f"⏳ ISSUE_WAITING: No account capacity for payout {gate_payout_id}")
            return IssueResult(IssueStatus.WAITING)

        params = AdvertisementParams(
            price=price.quantize(_CENT),
            quantity=calculate_quantity(amount, price),
            min_amount=amount,
            max_amount=amount,
            payment_method_id=selection.payment_method_id,
            token_id=Config.AD_TOKEN,
            currency_id=Config.AD_FIAT_CURRENCY,
            payment_period_minutes=Config.AD_PAYMENT_PERIOD_MINUTES,
            remark=Config.AD_REMARK,
        )
        external_ad_id = await asyncio.wait_for(
            self.client.create_advertisement(selection.account_id, params),
            timeout=self.capacity_manager.call_timeout,
        )
        self.capacity_manager.invalidate(selection.account_id)
        logger.info(
            f"📢 AD_CREATED: {external_ad_id} for payout {gate_payout_id} on {selection.account_id} "
            f"price={params.price} qty={params.quantity} method={selection.payment_method.value}"
        )

        try:
            return self._persist(payout_id, external_ad_id, selection, params)
        except IntegrityError:
            # A concurrent issuer won the unique payout key; our external ad is an orphan
            logger.warning(f"⚠️ ISSUE_RACE_LOST: Payout {gate_payout_id}, cancelling orphan ad {external_ad_id}")
            await self._cancel_orphan(selection.account_id, external_ad_id)
            with managed_session(self.session_factory) as session:
                existing = self._find_existing(session, payout_id)
            if existing is None:
                raise
            return existing

    def _persist(
        self, payout_id: int, external_ad_id: str, selection: AccountSelection, params: AdvertisementParams
    ) -> IssueResult:
        with managed_session(self.session_factory) as session:
            ad = session.execute(
                select(Advertisement).where(Advertisement.bybit_ad_id == external_ad_id)
            ).scalar_one_or_none()
            if ad is None:
                ad = Advertisement(bybit_ad_id=external_ad_id, payout_id=payout_id)
                session.add(ad)
            ad.bybit_account_id = selection.account_pk
            ad.price = params.price
            ad.quantity = params.quantity
            ad.payment_method = selection.payment_method.value
            ad.is_active = True
            session.flush()

            now = get_naive_utc_now()
            tx = Transaction(
                payout_id=payout_id,
                advertisement_id=ad.id,
                status=TransactionStatus.PENDING.value,
                chat_step=0,
                created_at=now,
                updated_at=now,
            )
            session.add(tx)
            session.flush()
            result = IssueResult(IssueStatus.CREATED, tx.id, ad.id)

        logger.info(f"✅ TRANSACTION_CREATED: {result.transaction_id} for payout {payout_id} (pending)")
        return result

    async def _cancel_orphan(self, account_id: str, external_ad_id: str) -> None:
        try:
            await asyncio.wait_for(
                self.client.cancel_advertisement(account_id, external_ad_id),
                timeout=self.capacity_manager.call_timeout,
            )
            self.capacity_manager.invalidate(account_id)
        except Exception as e:
            logger.error(f"❌ ORPHAN_AD_CANCEL_ERROR: {external_ad_id} on {account_id}: {e}")

    async def sweep_pending_payouts(self) -> Dict[str, Any]:
        """Issue advertisements for awaiting payouts that have no Transaction yet"""
        results: Dict[str, Any] = {"processed": 0, "created": 0, "rejected": 0, "waiting": False, "errors": []}

        with managed_session(self.session_factory) as session:
            payout_ids = session.execute(
                select(Payout.id)
                .outerjoin(Transaction, Transaction.payout_id == Payout.id)
                .where(
                    Payout.status.in_(Config.AWAITING_PAYOUT_STATUSES),
                    Transaction.id.is_(None),
                    Payout.amount > 0,
                    Payout.wallet.not_in(select(BlacklistedWalletRow.wallet)),
                )
                .order_by(Payout.created_at)
                .limit(self.batch_size)
            ).scalars().all()

        for payout_id in payout_ids:
            results["processed"] += 1
            try:
                outcome = await self.issue_for_payout(payout_id)
            except ValidationError as e:
                results["rejected"] += 1
                logger.warning(f"🚫 ISSUE_REJECTED: Payout {payout_id}: {e}")
                continue
            except Exception as e:
                results["errors"].append(f"{payout_id}: {e}")
                logger.error(f"❌ ISSUE_ERROR: Payout {payout_id}: {e}")
                continue

            if outcome.status == IssueStatus.WAITING:
                results["waiting"] = True
                break
            if outcome.status == IssueStatus.CREATED:
                results["created"] += 1

        if results["processed"]:
            logger.info(
                f"📊 ISSUANCE_SWEEP: processed={results['processed']} created={results['created']} "
                f"rejected={results['rejected']} waiting={results['waiting']}"
            )
        return results
