import os
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.config import logger, ADMIN_ALLOWLIST_IPS
from core.database import get_db, unit_of_work
from core.errors import ValidationError
from services import cashouts, ledger
from services.checkout import confirm_group_payment
from utils.payments import PaymentOutcome, PaymentResult

router = APIRouter(prefix="/api/admin", tags=["admin"])  # secure endpoints via ADMIN_SECRET


# --- Security helpers ---

def _get_admin_secret() -> str:
    return (os.getenv("ADMIN_SECRET") or "").strip()


def _extract_secret(request: Request, explicit: Optional[str] = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    h = request.headers.get("X-Admin-Secret", "").strip()
    if h:
        return h
    return request.query_params.get("secret", "").strip()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def _require_admin(request: Request, secret: Optional[str] = None) -> Optional[JSONResponse]:
    configured = _get_admin_secret()
    if not configured:
        return JSONResponse({"error": "admin_not_configured"}, status_code=503)
    provided = _extract_secret(request, secret)
    if not provided or provided != configured:
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    if ADMIN_ALLOWLIST_IPS:
        ip = _client_ip(request)
        if ip and ip not in ADMIN_ALLOWLIST_IPS:
            logger.warning(f"[admin] request from non-allowlisted ip={ip}")
            return JSONResponse({"error": "forbidden"}, status_code=403)
    return None


def _admin_id(request: Request) -> str:
    return (request.headers.get("X-Admin-Id") or "admin").strip()


# --- Models ---

class RejectPayload(BaseModel):
    reason: str


class TransferPayload(BaseModel):
    reference: str


class ReleasePayload(BaseModel):
    amount_cents: Optional[int] = None


class PaymentVerdictPayload(BaseModel):
    outcome: str
    reference: Optional[str] = None
    reason: Optional[str] = None


# --- Cashouts ---

@router.get("/cashouts")
async def admin_cashouts(request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return {"cashouts": [c.to_dict() for c in cashouts.list_open_cashouts(db)]}


@router.post("/cashouts/{cashout_id}/approve")
async def admin_approve_cashout(cashout_id: str, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return cashouts.approve_cashout(db, cashout_id, _admin_id(request)).to_dict()


@router.post("/cashouts/{cashout_id}/reject")
async def admin_reject_cashout(cashout_id: str, payload: RejectPayload, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return cashouts.reject_cashout(db, cashout_id, payload.reason).to_dict()


@router.post("/cashouts/{cashout_id}/transfer")
async def admin_transfer_cashout(cashout_id: str, payload: TransferPayload, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return cashouts.mark_transferred(db, cashout_id, payload.reference).to_dict()


@router.post("/cashouts/{cashout_id}/complete")
async def admin_complete_cashout(cashout_id: str, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return cashouts.complete_cashout(db, cashout_id).to_dict()


# --- Wallets ---

@router.post("/wallets/{wallet_id}/release")
async def admin_release_pending(wallet_id: str, payload: ReleasePayload, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    with unit_of_work(db, "admin.release"):
        moved = ledger.release_pending(db, wallet_id, payload.amount_cents)
    logger.info(f"[admin.release] wallet={wallet_id} amount={moved} by={_admin_id(request)}")
    return {"released_cents": moved, "wallet": ledger.get_wallet(db, wallet_id).to_dict()}


@router.get("/wallets/{wallet_id}/reconcile")
async def admin_reconcile_wallet(wallet_id: str, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    return ledger.reconcile_wallet(db, wallet_id)


# --- Payments ---

@router.post("/order-groups/{group_id}/payment")
async def admin_confirm_payment(group_id: str, payload: PaymentVerdictPayload, request: Request, db: Session = Depends(get_db)):
    denied = _require_admin(request)
    if denied:
        return denied
    try:
        outcome = PaymentOutcome((payload.outcome or "").strip().lower())
    except ValueError:
        raise ValidationError("outcome must be succeeded, failed or pending")
    result = PaymentResult(outcome, reference=payload.reference, reason=payload.reason)
    group = confirm_group_payment(db, group_id, result)
    return group.to_dict()
