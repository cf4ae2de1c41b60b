#!/usr/bin/env python3
"""
Settlement Reconciliation Engine - process entry point

Startup sequence:
1. Logging and configuration checks
2. Platform clients from the configured factories
3. Engine, web application and scheduler (started in the app lifespan)

The scheduler runs in this single process; do not start several workers.
"""

import importlib
import logging
import sys

import uvicorn

from config import Config
from services.settlement_engine import SettlementEngine
from webhook_server import create_app

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

# APScheduler logs every run at INFO
logging.getLogger("apscheduler").setLevel(logging.WARNING)


def load_factory(path: str):
    """Resolve a "module:callable" path"""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Factory path must look like 'module:callable', got {path!r}")
    return getattr(importlib.import_module(module_name), attr)


def build_engine() -> SettlementEngine:
    if not Config.TRADING_CLIENT_FACTORY:
        raise RuntimeError("TRADING_CLIENT_FACTORY is not configured")
    client = load_factory(Config.TRADING_CLIENT_FACTORY)()
    payout_feed = load_factory(Config.PAYOUT_FEED_FACTORY)() if Config.PAYOUT_FEED_FACTORY else None
    if payout_feed is None:
        logger.warning("⚠️ PAYOUT_FEED_FACTORY not configured - payouts must be ingested externally")
    return SettlementEngine(client, payout_feed=payout_feed)


def main():
    Config.log_environment_config()
    issues = Config.validate_production_config()
    if issues:
        for issue in issues:
            logger.critical(issue)
        sys.exit(1)

    try:
        app = create_app(build_engine())
    except Exception as e:
        logger.critical(f"❌ STARTUP_FAILED: {e}")
        sys.exit(1)

    logger.info(f"🚀 Starting settlement engine on {Config.WEBHOOK_HOST}:{Config.WEBHOOK_PORT}")
    uvicorn.run(app, host=Config.WEBHOOK_HOST, port=Config.WEBHOOK_PORT, log_level="info")


if __name__ == "__main__":
    main()
