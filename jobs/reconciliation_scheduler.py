"""
Reconciliation Scheduler - periodic sweeps of the settlement engine

Every component that has a push path also has a sweep here, so a missed or
delayed webhook only delays reconciliation by one interval:
1. Payout Sync - pull the settlement-platform feed
2. Issuance - post ads for awaiting payouts
3. Order Poll - bind orders the webhook did not deliver
4. Chat - fetch transcripts and answer counterparties
5. Receipt Matching - exact then fuzzy
6. Cancellation Detection
7. Fund Release - after the safety delay
8. Appeal Sync, Ad Cleanup, Stale-Order Flagging
"""

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.settlement_engine import SettlementEngine

logger = logging.getLogger(__name__)


async def run_sweep(name: str, sweep: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
    """Run one sweep, timing it and keeping its failure out of the scheduler"""
    start_time = time.monotonic()
    results: Dict[str, Any] = {"job": name, "status": "success"}
    try:
        results["result"] = await sweep()
    except Exception as e:
        logger.error(f"❌ SWEEP_ERROR: {name} failed: {e!r}")
        results["status"] = "error"
        results["error"] = str(e)
    results["execution_time_ms"] = (time.monotonic() - start_time) * 1000
    logger.debug(f"⏱️ SWEEP_DONE: {name} in {results['execution_time_ms']:.0f}ms")
    return results


class ReconciliationScheduler:
    """
    Interval jobs for every reconciliation sweep

    Jobs run with max_instances=1 and coalesce=True so a slow sweep never
    overlaps its own next run.
    """

    def __init__(self, engine: SettlementEngine):
        self.engine = engine

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 30
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    # ===== JOB BODIES =====

    async def run_payout_sync(self):
        return await run_sweep("payout_sync", self.engine.sync_payouts)

    async def run_issuance(self):
        return await run_sweep("issuance", self.engine.issuer.sweep_pending_payouts)

    async def run_order_poll(self):
        return await run_sweep("order_poll", self.engine.order_binder.sweep_active_orders)

    async def run_chat(self):
        await run_sweep("chat_sync", self.engine.chat_automation.sync_chats)
        return await run_sweep("chat_processing", self.engine.chat_automation.process_unprocessed)

    async def run_receipt_matching(self):
        async def sweep():
            return self.engine.receipt_matcher.sweep_unmatched()
        return await run_sweep("receipt_matching", sweep)

    async def run_cancellation(self):
        return await run_sweep("cancellation", self.engine.cancellation_detector.sweep)

    async def run_fund_release(self):
        return await run_sweep("fund_release", self.engine.fund_release.sweep)

    async def run_appeal_sync(self):
        return await run_sweep("appeal_sync", self.engine.appeal_sync.sweep)

    async def run_ad_cleanup(self):
        return await run_sweep("ad_cleanup", self.engine.ad_cleanup.sweep)

    async def run_stale_flagging(self):
        async def sweep():
            return self.engine.order_binder.flag_stale_unbound()
        return await run_sweep("stale_flagging", sweep)

    def setup_jobs(self):
        """Register every reconciliation sweep"""

        try:
            for job in self.scheduler.get_jobs():
                self.scheduler.remove_job(job.id)
                logger.info(f"🧹 Removed existing job: {job.id}")
        except Exception as e:
            logger.warning(f"⚠️ Job cleanup warning (non-critical): {e}")

        # (func, seconds, id, name, start offset second)
        jobs = [
            (self.run_payout_sync, Config.PAYOUT_SYNC_INTERVAL, "payout_sync", "📥 Payout Sync", 0),
            (self.run_issuance, Config.ISSUANCE_INTERVAL, "ad_issuance", "📢 Advertisement Issuance", 2),
            (self.run_order_poll, Config.ORDER_POLL_INTERVAL, "order_poll", "🔗 Order Binding Poll", 4),
            (self.run_chat, Config.CHAT_SYNC_INTERVAL, "chat_automation", "💬 Chat Sync & Answers", 1),
            (self.run_receipt_matching, Config.RECEIPT_MATCH_INTERVAL, "receipt_matching", "🧾 Receipt Matching", 3),
            (self.run_cancellation, Config.CANCELLATION_INTERVAL, "cancellation_detection",
             "🛑 Cancellation Detection", 2),
            (self.run_fund_release, Config.FUND_RELEASE_INTERVAL, "fund_release", "💸 Fund Release", 6),
            (self.run_appeal_sync, Config.APPEAL_SYNC_INTERVAL, "appeal_sync", "⚖️ Appeal Sync", 20),
            (self.run_ad_cleanup, Config.AD_CLEANUP_INTERVAL, "ad_cleanup", "🧹 Advertisement Cleanup", 40),
            (self.run_stale_flagging, Config.STALE_ORDER_CHECK_INTERVAL, "stale_order_flagging",
             "⏰ Stale Order Flagging", 50),
        ]

        # Staggered start seconds keep the sweeps from hitting the platform together
        for func, seconds, job_id, name, offset in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(
                    seconds=seconds, start_date=datetime.now().replace(second=offset, microsecond=0)
                ),
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=max(seconds, 30),
                replace_existing=True
            )
            logger.info(f"✅ {name} scheduled every {seconds} seconds")

        logger.info(f"🎯 RECONCILIATION_JOBS: {len(self.scheduler.get_jobs())} jobs registered")

    def start(self):
        """Start the reconciliation scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        logger.warning("✅ SCHEDULER ENABLED: Reconciliation sweeps running")

    def stop(self):
        """Stop the reconciliation scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("📴 Reconciliation job scheduler stopped")


_global_scheduler: Optional[ReconciliationScheduler] = None


def get_reconciliation_scheduler_instance(engine: Optional[SettlementEngine] = None) -> ReconciliationScheduler:
    """Get the global reconciliation scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        if engine is None:
            raise RuntimeError("Reconciliation scheduler needs an engine on first use")
        _global_scheduler = ReconciliationScheduler(engine)
    return _global_scheduler
