from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import current_uid
from core.config import logger, CASHOUT_MIN_CENTS
from core.database import get_db
from core.errors import NotFoundError
from models.wallets import CashoutStatus, Wallet
from services import cashouts, ledger
from utils.rate_limit import check_cashout_rate_limit

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


class CashoutPayload(BaseModel):
    amount_cents: int


def _own_wallet(db: Session, uid: str) -> Wallet:
    wallet = ledger.get_wallet_for_owner(db, uid)
    if not wallet:
        raise NotFoundError("No wallet yet; earnings appear after your first completed order")
    return wallet


@router.get("")
async def wallet_get(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    data = _own_wallet(db, uid).to_dict()
    data["cashout_min_cents"] = CASHOUT_MIN_CENTS
    return data


@router.get("/transactions")
async def wallet_transactions(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db),
                              limit: int = 50, offset: int = 0):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    wallet = _own_wallet(db, uid)
    rows = ledger.list_transactions(db, wallet.id, limit=max(1, min(limit, 200)), offset=max(0, offset))
    return {"transactions": [t.to_dict() for t in rows]}


@router.get("/earnings")
async def wallet_earnings(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db), period: str = "today"):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return ledger.earnings_summary(db, _own_wallet(db, uid).id, period)


@router.get("/cashouts")
async def wallet_cashouts(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db),
                          status: Optional[CashoutStatus] = None):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    rows = cashouts.list_cashouts(db, _own_wallet(db, uid).id, status)
    return {"cashouts": [c.to_dict() for c in rows]}


@router.post("/cashouts")
async def wallet_request_cashout(payload: CashoutPayload, uid: Optional[str] = Depends(current_uid),
                                 db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    allowed, msg = check_cashout_rate_limit(uid)
    if not allowed:
        return JSONResponse({"error": "rate_limited", "detail": msg}, status_code=429)
    wallet = _own_wallet(db, uid)
    logger.info(f"[wallet.cashout] uid={uid} amount={payload.amount_cents}")
    cashout = cashouts.request_cashout(db, wallet.id, uid, payload.amount_cents)
    return JSONResponse(cashout.to_dict(), status_code=201)


@router.post("/cashouts/{cashout_id}/cancel")
async def wallet_cancel_cashout(cashout_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return cashouts.cancel_cashout(db, cashout_id, uid).to_dict()
