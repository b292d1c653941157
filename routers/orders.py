from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import current_uid
from core.config import logger
from core.database import get_db
from core.errors import NotFoundError
from models.orders import OrderGroup
from services.checkout import checkout, quote_cart
from services.fulfillment import cancel_order

router = APIRouter(prefix="/api/orders", tags=["orders"])


class QuotePayload(BaseModel):
    address_id: str
    coupon_code: Optional[str] = None


class CheckoutPayload(BaseModel):
    address_id: str
    payment_method: str = "cod"
    coupon_code: Optional[str] = None
    special_instructions: Optional[str] = None


class CancelPayload(BaseModel):
    reason: Optional[str] = None


def _group_for_customer(db: Session, group_id: str, uid: str) -> OrderGroup:
    group = db.get(OrderGroup, group_id)
    if not group or group.customer_uid != uid:
        raise NotFoundError("Order not found")
    return group


def _group_payload(group: OrderGroup) -> dict:
    data = group.to_dict(include_orders=False)
    # The customer reads the OTP out to the courier at handover
    data["orders"] = [o.to_dict(include_otp=True) for o in group.orders]
    return data


@router.post("/quote")
async def orders_quote(payload: QuotePayload, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return quote_cart(db, uid, payload.address_id, payload.coupon_code).to_dict()


@router.post("/checkout")
async def orders_checkout(payload: CheckoutPayload, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    logger.info(f"[orders.checkout] start uid={uid} method={payload.payment_method} coupon={payload.coupon_code or '-'}")
    result = checkout(
        db, uid, payload.address_id, payload.payment_method,
        coupon_code=payload.coupon_code, special_instructions=payload.special_instructions,
    )
    group = _group_for_customer(db, result.group_id, uid)
    body = {
        "group": _group_payload(group),
        "payment_method": result.payment_method.value,
        "cart_cleared": result.cart_cleared,
        "payment": None,
    }
    if result.payment:
        body["payment"] = {
            "outcome": result.payment.outcome.value,
            "reference": result.payment.reference,
            "reason": result.payment.reason,
        }
    return JSONResponse(body, status_code=201)


@router.get("")
async def orders_list(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db), limit: int = 20):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    groups = (
        db.query(OrderGroup)
        .filter(OrderGroup.customer_uid == uid)
        .order_by(OrderGroup.created_at.desc())
        .limit(max(1, min(limit, 100)))
        .all()
    )
    return {"groups": [_group_payload(g) for g in groups]}


@router.get("/{group_id}")
async def orders_group_detail(group_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return _group_payload(_group_for_customer(db, group_id, uid))


@router.post("/{order_id}/cancel")
async def orders_cancel(order_id: str, payload: CancelPayload,
                        uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    order = cancel_order(db, order_id, payload.reason, cancelled_by="customer", customer_uid=uid)
    return order.to_dict()
