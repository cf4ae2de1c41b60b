"""
FastAPI Webhook Server for the Settlement Engine
Receives trading-platform push events, serves operator overrides and runs the
reconciliation scheduler for the lifetime of the process
"""
from contextlib import asynccontextmanager
import logging
import time
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, get_pool_stats, test_connection
from jobs.reconciliation_scheduler import ReconciliationScheduler
from routes.settlement_routes import admin_router, webhook_router
from services.settlement_engine import SettlementEngine, set_settlement_engine

logger = logging.getLogger(__name__)


def create_app(engine: SettlementEngine, start_scheduler: bool = True) -> FastAPI:
    """Build the application around one engine; the scheduler is optional for tests"""
    state = {"startup_timestamp": None, "scheduler": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🔧 Settlement engine starting...")
        create_tables(engine.session_factory.kw.get("bind"))
        set_settlement_engine(engine)

        scheduler: Optional[ReconciliationScheduler] = None
        if start_scheduler:
            scheduler = ReconciliationScheduler(engine)
            scheduler.start()
        state["scheduler"] = scheduler
        state["startup_timestamp"] = time.time()
        logger.info("✅ Settlement engine ready")

        yield

        logger.info("🔄 Settlement engine shutting down...")
        if scheduler is not None:
            scheduler.stop()
        set_settlement_engine(None)

    app = FastAPI(
        title="Settlement Reconciliation Engine",
        description="Payout, advertisement, order and receipt reconciliation",
        lifespan=lifespan
    )
    app.include_router(webhook_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": "Settlement engine is running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint with database readiness"""
        if state["startup_timestamp"] is None:
            return JSONResponse(
                content={"status": "starting", "service": "settlement-engine", "ready": False},
                status_code=503
            )
        database_ok = test_connection(engine.session_factory.kw.get("bind"))
        scheduler = state["scheduler"]
        return JSONResponse(
            content={
                "status": "healthy" if database_ok else "degraded",
                "service": "settlement-engine",
                "ready": database_ok,
                "environment": Config.CURRENT_ENVIRONMENT,
                "uptime_seconds": round(time.time() - state["startup_timestamp"], 2),
                "scheduler_jobs": len(scheduler.scheduler.get_jobs()) if scheduler else 0,
                "pool": get_pool_stats(),
            },
            status_code=200 if database_ok else 503
        )

    return app
