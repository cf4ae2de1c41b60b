"""
Account Capacity Manager - picks a trading account with a free advertisement slot
Each account may hold at most two active ads and, when it holds two, they use
different payment methods (one SBP, one Tinkoff).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from sqlalchemy import select

from caching.simple_cache import SimpleCache
from config import Config
from database import managed_session
from models import Advertisement, BybitAccount, PaymentMethod
from services.platform_clients import TradingPlatformClient

logger = logging.getLogger(__name__)


class _NoCapacity:
    """Back-pressure sentinel: every account is saturated, retry on a later tick"""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CAPACITY"


NO_CAPACITY = _NoCapacity()


@dataclass
class AccountSelection:
    account_pk: int
    account_id: str
    payment_method: PaymentMethod
    payment_method_id: str
    active_ads: int


@dataclass
class _AccountSnapshot:
    account_pk: int
    account_id: str
    local_count: int
    local_methods: List[str]
    live_count: Optional[int] = None

    @property
    def active_ads(self) -> int:
        return max(self.local_count, self.live_count or 0)


class AccountCapacityManager:
    """Owns the per-account TTL caches; nothing here is module-global"""

    def __init__(
        self,
        client: TradingPlatformClient,
        session_factory=None,
        max_ads_per_account: int = Config.MAX_ACTIVE_ADS_PER_ACCOUNT,
        call_timeout: float = Config.ACCOUNT_CALL_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.session_factory = session_factory
        self.max_ads_per_account = max_ads_per_account
        self.call_timeout = call_timeout
        self.payment_method_cache = SimpleCache(Config.PAYMENT_METHOD_CACHE_TTL, name="payment_methods")
        self.live_count_cache = SimpleCache(Config.LIVE_AD_COUNT_CACHE_TTL, name="live_ad_counts")

    def invalidate(self, account_id: str) -> None:
        """Drop the cached live count after an ad was created or cancelled"""
        self.live_count_cache.delete(account_id)

    async def get_payment_method_id(self, account_id: str, method: PaymentMethod) -> Optional[str]:
        methods = self.payment_method_cache.get(account_id)
        if methods is None:
            methods = await asyncio.wait_for(
                self.client.get_payment_methods(account_id), timeout=self.call_timeout
            )
            self.payment_method_cache.set(account_id, methods)
        return methods.get(method.value)

    async def _live_count(self, snapshot: _AccountSnapshot) -> _AccountSnapshot:
        cached = self.live_count_cache.get(snapshot.account_id)
        if cached is None:
            cached = await asyncio.wait_for(
                self.client.count_active_advertisements(snapshot.account_id), timeout=self.call_timeout
            )
            self.live_count_cache.set(snapshot.account_id, cached)
        snapshot.live_count = int(cached)
        return snapshot

    def _load_local_snapshots(self) -> List[_AccountSnapshot]:
        with managed_session(self.session_factory) as session:
            accounts = session.execute(
                select(BybitAccount).where(BybitAccount.is_active.is_(True)).order_by(BybitAccount.id)
            ).scalars().all()

            methods_by_account: Dict[int, List[str]] = {}
            rows = session.execute(
                select(Advertisement.bybit_account_id, Advertisement.payment_method).where(
                    Advertisement.is_active.is_(True)
                )
            ).all()
            for account_pk, method in rows:
                methods_by_account.setdefault(account_pk, []).append(method)

            return [
                _AccountSnapshot(
                    account_pk=account.id,
                    account_id=account.account_id,
                    local_count=len(methods_by_account.get(account.id, [])),
                    local_methods=methods_by_account.get(account.id, []),
                )
                for account in accounts
            ]

    async def snapshot_accounts(self) -> List[_AccountSnapshot]:
        """Local counts re-verified against the live platform, accounts queried concurrently"""
        snapshots = self._load_local_snapshots()
        results = await asyncio.gather(
            *(self._live_count(snapshot) for snapshot in snapshots), return_exceptions=True
        )

        verified = []
        for snapshot, result in zip(snapshots, results):
            if isinstance(result, BaseException):
                # Without a live count the account cannot be proven to have room
                logger.warning(f"⚠️ CAPACITY_CHECK_FAILED: Account {snapshot.account_id} skipped: {result!r}")
                continue
            if snapshot.live_count != snapshot.local_count:
                logger.info(
                    f"🔄 CAPACITY_DRIFT: Account {snapshot.account_id} local={snapshot.local_count} "
                    f"live={snapshot.live_count}, using {snapshot.active_ads}"
                )
            verified.append(snapshot)
        return verified

    def _rank(self, snapshot: _AccountSnapshot, preference: PaymentMethod):
        """Return (tier, method) for an account with a free slot, or None; lower tier wins"""
        if snapshot.active_ads == 0:
            return 1, preference
        if (snapshot.live_count or 0) > snapshot.local_count:
            logger.info(
                f"⏭️ UNKNOWN_LIVE_AD: Account {snapshot.account_id} has {snapshot.live_count} live ads, "
                f"{snapshot.local_count} known locally; skipped"
            )
            return None
        existing = snapshot.local_methods[0]
        if existing != preference.value:
            return 0, preference
        return 2, preference.opposite

    async def select_account(
        self, payment_preference: Optional[PaymentMethod] = None
    ) -> Union[AccountSelection, _NoCapacity]:
        """
        Pick the account for the next advertisement.

        Preference order: an account whose single ad uses the other method, then
        an empty account, then an account whose single ad uses the same method
        (the new ad flips to the other method). Saturated accounts are skipped,
        as are accounts holding live ads whose payment method is not known locally.
        """
        preference = payment_preference or PaymentMethod(Config.DEFAULT_PAYMENT_METHOD)
        snapshots = await self.snapshot_accounts()

        candidates = []
        for snapshot in snapshots:
            if snapshot.active_ads >= self.max_ads_per_account:
                continue
            ranked = self._rank(snapshot, preference)
            if ranked is None:
                continue
            tier, method = ranked
            candidates.append((tier, snapshot, method))
        candidates.sort(key=lambda item: item[0])

        for _, snapshot, method in candidates:
            try:
                method_id = await self.get_payment_method_id(snapshot.account_id, method)
            except Exception as e:
                logger.warning(f"⚠️ PAYMENT_METHOD_LOOKUP_FAILED: Account {snapshot.account_id}: {e!r}")
                continue
            if not method_id:
                logger.warning(f"⚠️ PAYMENT_METHOD_MISSING: Account {snapshot.account_id} has no {method.value}")
                continue

            logger.info(
                f"✅ ACCOUNT_SELECTED: {snapshot.account_id} ({snapshot.active_ads} active) "
                f"method={method.value}"
            )
            return AccountSelection(
                account_pk=snapshot.account_pk,
                account_id=snapshot.account_id,
                payment_method=method,
                payment_method_id=method_id,
                active_ads=snapshot.active_ads,
            )

        logger.info(f"⏳ NO_CAPACITY: {len(snapshots)} accounts checked, none with a free slot")
        return NO_CAPACITY
