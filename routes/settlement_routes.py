"""
Settlement Routes
Trading-platform push webhook and operator override endpoints
"""

import hmac
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel

from config import Config
from services.settlement_engine import SettlementEngine, get_settlement_engine
from services.settlement_errors import (
    NotFoundError, PlatformAPIError, SettlementError, StateTransitionError, ValidationError,
)

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks/bybit", tags=["bybit"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not expected:
        # Unset secret only passes outside production; validate_production_config blocks the rest
        return not Config.IS_PRODUCTION
    return bool(provided) and hmac.compare_digest(provided, expected)


def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> None:
    if not _secret_matches(x_admin_token, Config.ADMIN_API_TOKEN):
        logger.warning("🚫 ADMIN_AUTH_REJECTED: invalid or missing admin token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _to_http(e: SettlementError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, StateTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, PlatformAPIError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ============ WEBHOOK ============


@webhook_router.post("/events")
async def handle_platform_event(
    request: Request,
    x_webhook_secret: Optional[str] = Header(None),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    """
    Handle trading-platform push events (ORDER_CREATED, chatMessage)
    Every event is idempotent; the poll sweeps cover anything dropped here
    """
    if not _secret_matches(x_webhook_secret, Config.BYBIT_WEBHOOK_SECRET):
        logger.error("Bybit webhook rejected: invalid secret header")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    raw_body = await request.body()
    try:
        event = orjson.loads(raw_body)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Malformed JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Event must be an object")

    try:
        result = await engine.handle_event(event)
    except SettlementError as e:
        raise _to_http(e)
    logger.info(f"📨 BYBIT_EVENT: type={event.get('type')} result={result.get('status')}")
    return result


# ============ ADMIN ============


class CancelRequest(BaseModel):
    reason: str = "Cancelled by operator"


class BlacklistRequest(BaseModel):
    wallet: str
    reason: Optional[str] = None


class ReceiptCorrection(BaseModel):
    amount: Optional[str] = None
    transfer_datetime: Optional[str] = None
    transfer_type: Optional[str] = None
    status: Optional[str] = None
    recipient_bank: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_card: Optional[str] = None


@admin_router.get("/transactions", dependencies=[Depends(require_admin_token)])
async def list_transactions(
    status: Optional[str] = Query(None),
    needs_attention: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        return engine.overrides.list_transactions(status=status, limit=limit, needs_attention=needs_attention)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status {status}")


@admin_router.post("/payouts/{payout_id}/reissue", dependencies=[Depends(require_admin_token)])
async def reissue_advertisement(payout_id: int, engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        return await engine.overrides.force_reissue_advertisement(payout_id)
    except SettlementError as e:
        raise _to_http(e)


@admin_router.post("/transactions/{transaction_id}/release", dependencies=[Depends(require_admin_token)])
async def release_transaction(transaction_id: int, engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        return await engine.overrides.force_release(transaction_id)
    except SettlementError as e:
        raise _to_http(e)


@admin_router.post("/transactions/{transaction_id}/cancel", dependencies=[Depends(require_admin_token)])
async def cancel_transaction(transaction_id: int, body: CancelRequest,
                             engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        engine.overrides.force_cancel(transaction_id, body.reason)
    except SettlementError as e:
        raise _to_http(e)
    return {"transaction_id": transaction_id, "status": "cancelled"}


@admin_router.post("/transactions/{transaction_id}/confirm-payment", dependencies=[Depends(require_admin_token)])
async def confirm_payment(transaction_id: int, engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        engine.overrides.confirm_payment(transaction_id)
    except SettlementError as e:
        raise _to_http(e)
    return {"transaction_id": transaction_id, "status": "payment_received"}


@admin_router.post("/receipts/{receipt_id}/confirm-match", dependencies=[Depends(require_admin_token)])
async def confirm_receipt_match(receipt_id: int, engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        transaction_id = engine.overrides.confirm_receipt_match(receipt_id)
    except SettlementError as e:
        raise _to_http(e)
    return {"receipt_id": receipt_id, "transaction_id": transaction_id, "status": "receipt_received"}


@admin_router.post("/receipts/{receipt_id}/correct", dependencies=[Depends(require_admin_token)])
async def correct_receipt(receipt_id: int, body: ReceiptCorrection,
                          engine: SettlementEngine = Depends(get_settlement_engine)):
    fields: Dict[str, Any] = body.model_dump(exclude_none=True)
    try:
        engine.overrides.mark_receipt_corrected(receipt_id, **_coerce_correction(fields))
        match = engine.receipt_matcher.match(receipt_id)
    except SettlementError as e:
        raise _to_http(e)
    return {"receipt_id": receipt_id, "matched": match.matched, "transaction_id": match.transaction_id}


@admin_router.post("/blacklist", dependencies=[Depends(require_admin_token)])
async def blacklist_wallet(body: BlacklistRequest, engine: SettlementEngine = Depends(get_settlement_engine)):
    moved = engine.overrides.blacklist_wallet(body.wallet, body.reason)
    return {"wallet": body.wallet, "terminated_transactions": moved}


def _coerce_correction(fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        if "amount" in fields:
            fields["amount"] = Decimal(fields["amount"])
        if "transfer_datetime" in fields:
            fields["transfer_datetime"] = datetime.fromisoformat(fields["transfer_datetime"])
    except (InvalidOperation, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid correction value: {e}")
    return fields
