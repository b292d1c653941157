from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import ROLE_COURIER, current_uid, resolve_role
from core.config import logger
from core.database import get_db
from services import fulfillment
from utils.rate_limit import check_otp_rate_limit

router = APIRouter(prefix="/api/delivery", tags=["delivery"])


def _require_courier(db: Session, uid: Optional[str]) -> Optional[JSONResponse]:
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if resolve_role(db, uid) != ROLE_COURIER:
        return JSONResponse({"error": "forbidden", "detail": "Delivery partner account required"}, status_code=403)
    return None


class ItemTogglePayload(BaseModel):
    collected: bool


class CompletePayload(BaseModel):
    otp: str


@router.get("/orders/available")
async def delivery_available(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db), limit: int = 50):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    orders = fulfillment.list_available_orders(db, limit=max(1, min(limit, 100)))
    return {"orders": [o.to_dict() for o in orders]}


@router.get("/orders/mine")
async def delivery_mine(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db), active: bool = True):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    orders = fulfillment.list_courier_orders(db, uid, active_only=active)
    return {"orders": [o.to_dict() for o in orders]}


@router.get("/orders/{order_id}")
async def delivery_order_detail(order_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    return fulfillment.get_order_detail(db, order_id, uid).to_dict()


@router.post("/orders/{order_id}/accept")
async def delivery_accept(order_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    logger.info(f"[delivery.accept] uid={uid} order={order_id}")
    return fulfillment.accept_order(db, order_id, uid).to_dict()


@router.post("/orders/{order_id}/items/{item_id}")
async def delivery_toggle_item(order_id: str, item_id: int, payload: ItemTogglePayload,
                               uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    item = fulfillment.set_item_collected(db, order_id, uid, item_id, payload.collected)
    return item.to_dict()


@router.post("/orders/{order_id}/pickups/{vendor_uid}/confirm")
async def delivery_confirm_pickup(order_id: str, vendor_uid: str,
                                  uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    return fulfillment.confirm_vendor_pickup(db, order_id, uid, vendor_uid).to_dict()


@router.post("/orders/{order_id}/out-for-delivery")
async def delivery_out(order_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    return fulfillment.mark_out_for_delivery(db, order_id, uid).to_dict()


@router.post("/orders/{order_id}/complete")
async def delivery_complete(order_id: str, payload: CompletePayload,
                            uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_courier(db, uid)
    if denied:
        return denied
    allowed, msg = check_otp_rate_limit(order_id)
    if not allowed:
        logger.warning(f"[delivery.complete] OTP rate limit hit uid={uid} order={order_id}")
        return JSONResponse({"error": "rate_limited", "detail": msg}, status_code=429)
    return fulfillment.complete_delivery(db, order_id, uid, payload.otp).to_dict()
