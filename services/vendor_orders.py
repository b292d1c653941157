"""
Store-side order handling.

    pending -> accepted -> ready_for_pickup
    pending | accepted | ready_for_pickup -> rejected   (order cancelled)

A vendor sees its incoming orders, accepts and packs them, then marks them
ready; only then are they offered to couriers. Rejecting needs a reason that
the customer sees on the cancelled order. Once a courier holds the order the
store can no longer reject it.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from core.config import logger
from core.database import compare_and_set, unit_of_work
from core.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from models.orders import Order, OrderStatus, PaymentMethod, PaymentStatus, VendorOrderStatus
from services.fulfillment import add_tracking

REJECTABLE = (VendorOrderStatus.PENDING, VendorOrderStatus.ACCEPTED, VendorOrderStatus.READY_FOR_PICKUP)


def _vendor_order(db: Session, order_id: str, vendor_uid: str) -> Order:
    order = db.get(Order, order_id)
    if not order or order.vendor_uid != vendor_uid:
        raise NotFoundError("Order not found")
    return order


def _is_payable(order: Order) -> bool:
    return order.payment_method == PaymentMethod.COD or order.payment_status == PaymentStatus.PAID


def _refuse(order: Order, action: str):
    if order.status == OrderStatus.CANCELLED:
        raise InvalidStateTransitionError("Order was cancelled")
    raise InvalidStateTransitionError(
        f"Order is {order.vendor_status.value} ({order.status.value}), cannot {action}"
    )


def vendor_accept_order(db: Session, order_id: str, vendor_uid: str) -> Order:
    with unit_of_work(db, "vendor.accept"):
        order = _vendor_order(db, order_id, vendor_uid)
        if order.vendor_status in (VendorOrderStatus.ACCEPTED, VendorOrderStatus.READY_FOR_PICKUP):
            return order
        if order.status == OrderStatus.UNASSIGNED and not _is_payable(order):
            raise InvalidStateTransitionError("Order is awaiting payment")
        ok = compare_and_set(
            db, Order,
            [
                Order.id == order_id,
                Order.status == OrderStatus.UNASSIGNED,
                Order.vendor_status == VendorOrderStatus.PENDING,
            ],
            {"vendor_status": VendorOrderStatus.ACCEPTED, "vendor_accepted_at": datetime.utcnow()},
        )
        db.refresh(order)
        if not ok:
            _refuse(order, "accept")
        add_tracking(db, order.id, order.status, "Accepted by the store")
    logger.info(f"[vendor.accept] order {order.order_number} accepted by {vendor_uid}")
    return order


def mark_ready_for_pickup(db: Session, order_id: str, vendor_uid: str) -> Order:
    """Packed and waiting at the counter; the order now shows up for couriers."""
    with unit_of_work(db, "vendor.ready"):
        order = _vendor_order(db, order_id, vendor_uid)
        if order.vendor_status == VendorOrderStatus.READY_FOR_PICKUP:
            return order
        ok = compare_and_set(
            db, Order,
            [
                Order.id == order_id,
                Order.status == OrderStatus.UNASSIGNED,
                Order.vendor_status == VendorOrderStatus.ACCEPTED,
            ],
            {"vendor_status": VendorOrderStatus.READY_FOR_PICKUP, "ready_at": datetime.utcnow()},
        )
        db.refresh(order)
        if not ok:
            if order.vendor_status == VendorOrderStatus.PENDING and order.status == OrderStatus.UNASSIGNED:
                raise InvalidStateTransitionError("Accept the order before marking it ready")
            _refuse(order, "be marked ready")
        add_tracking(db, order.id, order.status, "Packed and ready for pickup")
    logger.info(f"[vendor.ready] order {order.order_number} ready at {vendor_uid}")
    return order


def vendor_reject_order(db: Session, order_id: str, vendor_uid: str, reason: Optional[str]) -> Order:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Tell the customer why the order is rejected")

    with unit_of_work(db, "vendor.reject"):
        order = _vendor_order(db, order_id, vendor_uid)
        ok = compare_and_set(
            db, Order,
            [
                Order.id == order_id,
                Order.status == OrderStatus.UNASSIGNED,
                Order.delivery_boy_uid.is_(None),
                Order.vendor_status.in_(REJECTABLE),
            ],
            {
                "status": OrderStatus.CANCELLED,
                "vendor_status": VendorOrderStatus.REJECTED,
                "cancellation_reason": reason,
                "cancelled_by": "vendor",
                "cancelled_at": datetime.utcnow(),
            },
        )
        db.refresh(order)
        if not ok:
            logger.info(f"[vendor.reject] refused for order {order.order_number} in {order.status.value}")
            _refuse(order, "be rejected")
        add_tracking(db, order.id, OrderStatus.CANCELLED, f"Rejected by the store: {reason}")
    logger.info(f"[vendor.reject] order {order.order_number} rejected by {vendor_uid}")
    return order


def list_vendor_orders(db: Session, vendor_uid: str, vendor_status: Optional[VendorOrderStatus] = None,
                       limit: int = 50) -> List[Order]:
    q = db.query(Order).filter(Order.vendor_uid == vendor_uid)
    if vendor_status is not None:
        q = q.filter(Order.vendor_status == vendor_status)
    return q.order_by(Order.created_at.desc()).limit(limit).all()
