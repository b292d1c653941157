"""Coupon validation for checkout."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.config import logger
from core.database import compare_and_set
from core.errors import StateConflictError, ValidationError
from models.coupons import Coupon, CouponUsage
from utils.pricing import coupon_discount


@dataclass(frozen=True)
class ActiveDiscount:
    code: str
    amount_cents: int
    free_delivery: bool = False
    coupon_id: Optional[int] = None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def validate_coupon(db: Session, code: str, customer_uid: str, subtotal_cents: int,
                    now: Optional[datetime] = None) -> ActiveDiscount:
    now = now or datetime.utcnow()
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Coupon code is required")

    coupon = db.query(Coupon).filter(Coupon.code == normalized).first()
    if not coupon or not coupon.is_active:
        raise ValidationError("Invalid coupon code")
    if coupon.start_date and now < coupon.start_date:
        raise ValidationError("This coupon is not active yet")
    if coupon.end_date and now > coupon.end_date:
        raise ValidationError("This coupon has expired")
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise ValidationError("This coupon has reached its usage limit")

    if coupon.usage_limit_per_user:
        used = (
            db.query(CouponUsage)
            .filter(CouponUsage.coupon_id == coupon.id, CouponUsage.customer_uid == customer_uid)
            .count()
        )
        if used >= coupon.usage_limit_per_user:
            raise ValidationError("You have already used this coupon")

    if subtotal_cents < (coupon.min_order_cents or 0):
        raise ValidationError(
            f"Minimum order of {coupon.min_order_cents / 100:.2f} required for this coupon"
        )

    amount = coupon_discount(subtotal_cents, coupon.discount_type, coupon.discount_value, coupon.max_discount_cents)
    return ActiveDiscount(code=coupon.code, amount_cents=amount,
                          free_delivery=bool(coupon.free_delivery), coupon_id=coupon.id)


def record_usage(db: Session, discount: ActiveDiscount, customer_uid: str, order_group_id: str):
    """
    Runs inside the order-group transaction. The global limit is re-checked in
    the same UPDATE that bumps the counter, so two checkouts that both passed
    validate_coupon cannot take the last slot twice.
    """
    if discount.coupon_id is None:
        return
    claimed = compare_and_set(
        db, Coupon,
        [
            Coupon.id == discount.coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        ],
        {"usage_count": Coupon.usage_count + 1},
    )
    if not claimed:
        logger.warning(f"[coupons] {discount.code} ran out before group {order_group_id} was placed")
        raise StateConflictError("This coupon has reached its usage limit")
    db.add(CouponUsage(
        coupon_id=discount.coupon_id,
        customer_uid=customer_uid,
        order_group_id=order_group_id,
        discount_cents=discount.amount_cents,
    ))


def release_usage(db: Session, order_group_id: str) -> int:
    """Give back the coupon slots taken by a group whose payment failed. Joins the caller's transaction."""
    usages = db.query(CouponUsage).filter(CouponUsage.order_group_id == order_group_id).all()
    for usage in usages:
        compare_and_set(
            db, Coupon,
            [Coupon.id == usage.coupon_id, Coupon.usage_count > 0],
            {"usage_count": Coupon.usage_count - 1},
        )
        db.delete(usage)
    if usages:
        logger.info(f"[coupons] released {len(usages)} usage(s) of group {order_group_id}")
    return len(usages)
