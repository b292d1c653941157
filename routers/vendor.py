from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import ROLE_VENDOR, current_uid, resolve_role
from core.config import logger
from core.database import get_db
from core.errors import ValidationError
from models.orders import VendorOrderStatus
from services import vendor_orders

router = APIRouter(prefix="/api/vendor", tags=["vendor"])


def _require_vendor(db: Session, uid: Optional[str]) -> Optional[JSONResponse]:
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if resolve_role(db, uid) != ROLE_VENDOR:
        return JSONResponse({"error": "forbidden", "detail": "Store account required"}, status_code=403)
    return None


class RejectPayload(BaseModel):
    reason: Optional[str] = None


@router.get("/orders")
async def vendor_orders_list(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db),
                             status: Optional[str] = None, limit: int = 50):
    denied = _require_vendor(db, uid)
    if denied:
        return denied
    wanted = None
    if status:
        try:
            wanted = VendorOrderStatus(status.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'")
    orders = vendor_orders.list_vendor_orders(db, uid, wanted, limit=max(1, min(limit, 100)))
    return {"orders": [o.to_dict() for o in orders]}


@router.post("/orders/{order_id}/accept")
async def vendor_accept(order_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_vendor(db, uid)
    if denied:
        return denied
    logger.info(f"[vendor.accept] uid={uid} order={order_id}")
    return vendor_orders.vendor_accept_order(db, order_id, uid).to_dict()


@router.post("/orders/{order_id}/ready")
async def vendor_ready(order_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_vendor(db, uid)
    if denied:
        return denied
    return vendor_orders.mark_ready_for_pickup(db, order_id, uid).to_dict()


@router.post("/orders/{order_id}/reject")
async def vendor_reject(order_id: str, payload: RejectPayload,
                        uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    denied = _require_vendor(db, uid)
    if denied:
        return denied
    logger.info(f"[vendor.reject] uid={uid} order={order_id}")
    return vendor_orders.vendor_reject_order(db, order_id, uid, payload.reason).to_dict()
