from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import current_uid
from core.config import logger
from core.database import get_db, unit_of_work
from services import cart as cart_service

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddItemPayload(BaseModel):
    product_id: str
    quantity: int = 1


class QuantityPayload(BaseModel):
    delta: int


@router.get("")
async def cart_list(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    return cart_service.cart_summary(db, uid)


@router.post("/items")
async def cart_add(payload: AddItemPayload, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    with unit_of_work(db, "cart.add"):
        cart_service.add_item(db, uid, payload.product_id, payload.quantity)
    logger.info(f"[cart.add] uid={uid} product={payload.product_id} qty={payload.quantity}")
    return cart_service.cart_summary(db, uid)


@router.patch("/items/{product_id}")
async def cart_change_quantity(product_id: str, payload: QuantityPayload,
                               uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    with unit_of_work(db, "cart.quantity"):
        cart_service.update_quantity(db, uid, product_id, payload.delta)
    return cart_service.cart_summary(db, uid)


@router.delete("/items/{product_id}")
async def cart_remove(product_id: str, uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    with unit_of_work(db, "cart.remove"):
        cart_service.remove_item(db, uid, product_id)
    return cart_service.cart_summary(db, uid)


@router.delete("")
async def cart_clear(uid: Optional[str] = Depends(current_uid), db: Session = Depends(get_db)):
    if not uid:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    with unit_of_work(db, "cart.clear"):
        removed = cart_service.clear_cart(db, uid)
    return {"ok": True, "removed": removed}
