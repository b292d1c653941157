"""
Order fulfillment state machine.

    unassigned -> assigned -> picked_up -> out_for_delivery -> delivered
    unassigned | assigned -> cancelled

The store side (services.vendor_orders) runs alongside: an order is offered
to couriers only once its vendor has marked it ready for pickup. A courier
accepts an order, collects every item from every vendor leg, and
hands over against the customer's OTP. Delivery confirmation and the wallet
postings it triggers commit together. Every status change appends an
order_tracking row.
"""
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.config import logger
from core.database import compare_and_set, unit_of_work
from core.errors import (
    AlreadyAssignedError, IncompleteCollectionError, InvalidOTPError,
    InvalidStateTransitionError, NotFoundError, NotVerifiedError,
)
from models.orders import (
    Order, OrderGroup, OrderItem, OrderStatus, OrderTracking, PaymentMethod, PaymentStatus,
    VendorOrderStatus, VendorPickup,
)
from services import ledger
from utils import otp
from utils.verification import is_admin_verified, is_kyc_approved

CANCELLABLE = (OrderStatus.UNASSIGNED, OrderStatus.ASSIGNED)
OtpValidator = Callable[[Session, str, str], bool]


def add_tracking(db: Session, order_id: str, status, description: Optional[str] = None) -> OrderTracking:
    value = status.value if isinstance(status, OrderStatus) else str(status)
    row = OrderTracking(order_id=order_id, status=value, description=description)
    db.add(row)
    return row


def payable_filter():
    return or_(Order.payment_method == PaymentMethod.COD, Order.payment_status == PaymentStatus.PAID)


def _get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def _courier_order(db: Session, order_id: str, courier_uid: str) -> Order:
    """The order, if `courier_uid` holds it. Other couriers never learn it exists."""
    order = _get_order(db, order_id)
    if order.delivery_boy_uid != courier_uid:
        raise NotFoundError("Order not found")
    return order


def _move(db: Session, order: Order, expected: OrderStatus, target: OrderStatus, description: str, **values) -> bool:
    values["status"] = target
    ok = compare_and_set(db, Order, [Order.id == order.id, Order.status == expected], values)
    if ok:
        add_tracking(db, order.id, target, description)
    db.refresh(order)
    return ok


def _pickup(order: Order, vendor_uid: str) -> Optional[VendorPickup]:
    return next((p for p in order.pickups if p.vendor_uid == vendor_uid), None)


def _advance_to_out_for_delivery(db: Session, order: Order):
    now = datetime.utcnow()
    if order.status == OrderStatus.ASSIGNED:
        if not _move(db, order, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP,
                     "All items collected from every vendor", picked_up_at=now):
            raise InvalidStateTransitionError(f"Order is {order.status.value}, cannot be picked up")
    if order.status == OrderStatus.PICKED_UP:
        if not _move(db, order, OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY, "Out for delivery"):
            raise InvalidStateTransitionError(f"Order is {order.status.value}, cannot go out for delivery")
    logger.info(f"[fulfillment] order {order.order_number} out for delivery")


def accept_order(db: Session, order_id: str, courier_uid: str) -> Order:
    with unit_of_work(db, "fulfillment.accept"):
        if not (is_admin_verified(db, courier_uid) and is_kyc_approved(db, courier_uid)):
            logger.info(f"[fulfillment.accept] unverified courier {courier_uid} refused for order {order_id}")
            raise NotVerifiedError("Complete verification before accepting orders")

        order = _get_order(db, order_id)
        if order.delivery_boy_uid == courier_uid and order.status != OrderStatus.CANCELLED:
            return order

        ok = compare_and_set(
            db, Order,
            [
                Order.id == order_id,
                Order.status == OrderStatus.UNASSIGNED,
                Order.delivery_boy_uid.is_(None),
                Order.vendor_status == VendorOrderStatus.READY_FOR_PICKUP,
                payable_filter(),
            ],
            {"status": OrderStatus.ASSIGNED, "delivery_boy_uid": courier_uid, "assigned_at": datetime.utcnow()},
        )
        db.refresh(order)
        if not ok:
            if order.delivery_boy_uid == courier_uid:
                return order
            if order.status == OrderStatus.CANCELLED:
                raise InvalidStateTransitionError("Order was cancelled")
            if order.status == OrderStatus.UNASSIGNED and order.delivery_boy_uid is None:
                if order.vendor_status != VendorOrderStatus.READY_FOR_PICKUP:
                    raise InvalidStateTransitionError("Order is not ready for pickup yet")
                raise InvalidStateTransitionError("Order is awaiting payment")
            logger.info(f"[fulfillment.accept] order {order_id} already taken, refused {courier_uid}")
            raise AlreadyAssignedError("Order was already accepted by another delivery partner")

        for vendor_uid in sorted({item.vendor_uid for item in order.items}):
            db.add(VendorPickup(order_id=order.id, vendor_uid=vendor_uid))
        add_tracking(db, order.id, OrderStatus.ASSIGNED, "Delivery partner assigned")
    logger.info(f"[fulfillment.accept] order {order.order_number} assigned to {courier_uid}")
    return order


def set_item_collected(db: Session, order_id: str, courier_uid: str, item_id: int, collected: bool) -> OrderItem:
    """Persist one item's collected flag immediately."""
    with unit_of_work(db, "fulfillment.collect_item"):
        order = _courier_order(db, order_id, courier_uid)
        if order.status != OrderStatus.ASSIGNED:
            raise InvalidStateTransitionError(f"Items cannot be changed while the order is {order.status.value}")
        item = next((i for i in order.items if i.id == item_id), None)
        if not item:
            raise NotFoundError("Item not found in this order")
        pickup = _pickup(order, item.vendor_uid)
        if pickup and pickup.collected:
            raise InvalidStateTransitionError("Pickup from this vendor is already confirmed")
        item.collected = bool(collected)
        item.collected_at = datetime.utcnow() if collected else None
    return item


def confirm_vendor_pickup(db: Session, order_id: str, courier_uid: str, vendor_uid: str) -> Order:
    with unit_of_work(db, "fulfillment.confirm_pickup"):
        order = _courier_order(db, order_id, courier_uid)
        pickup = _pickup(order, vendor_uid)
        if not pickup:
            raise NotFoundError("This order has no pickup from that vendor")
        if pickup.collected:
            return order
        if order.status != OrderStatus.ASSIGNED:
            raise InvalidStateTransitionError(f"Pickup cannot be confirmed while the order is {order.status.value}")

        missing = [i for i in order.items if i.vendor_uid == vendor_uid and not i.collected]
        if missing:
            logger.info(f"[fulfillment.pickup] order {order.order_number} vendor {vendor_uid}: {len(missing)} item(s) not collected")
            raise IncompleteCollectionError(f"{len(missing)} item(s) from this vendor are not collected yet")

        pickup.collected = True
        pickup.collected_at = datetime.utcnow()
        add_tracking(db, order.id, order.status, f"Collected from vendor {vendor_uid}")
        db.flush()

        if all(p.collected for p in order.pickups):
            _advance_to_out_for_delivery(db, order)
    return order


def mark_out_for_delivery(db: Session, order_id: str, courier_uid: str) -> Order:
    with unit_of_work(db, "fulfillment.out_for_delivery"):
        order = _courier_order(db, order_id, courier_uid)
        if order.status == OrderStatus.OUT_FOR_DELIVERY:
            return order
        if order.status not in (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP):
            raise InvalidStateTransitionError(f"Order is {order.status.value}, cannot go out for delivery")
        pending = [p.vendor_uid for p in order.pickups if not p.collected]
        if pending or not order.pickups:
            raise IncompleteCollectionError(
                f"Pickup not confirmed for vendor(s): {', '.join(pending) or 'all'}"
            )
        _advance_to_out_for_delivery(db, order)
    return order


def complete_delivery(db: Session, order_id: str, courier_uid: str, code: str,
                      validator: OtpValidator = otp.validate) -> Order:
    """
    Hand the order over against the customer's OTP.

    On success the order is delivered, a cash payment is marked collected, the
    courier is credited the payout and the vendor its earnings, all in one
    commit. A wrong code changes nothing.
    """
    with unit_of_work(db, "fulfillment.complete"):
        order = _courier_order(db, order_id, courier_uid)
        if order.status != OrderStatus.OUT_FOR_DELIVERY:
            raise InvalidStateTransitionError(f"Order is {order.status.value}, cannot be delivered")
        if not validator(db, order_id, code):
            logger.warning(f"[fulfillment.complete] wrong OTP for order {order.order_number} by {courier_uid}")
            raise InvalidOTPError("Incorrect OTP, ask the customer to check the code")

        if not _move(db, order, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, "Delivered to customer",
                     delivered_at=datetime.utcnow(), payment_status=PaymentStatus.PAID):
            raise InvalidStateTransitionError(f"Order is {order.status.value}, cannot be delivered")

        if order.payout_cents > 0:
            ledger.credit_courier_payout(db, order)
        ledger.credit_vendor_earnings(db, order)
        _settle_cod_group(db, order.group_id)
    logger.info(f"[fulfillment.complete] order {order.order_number} delivered by {courier_uid}")
    return order


def _settle_cod_group(db: Session, group_id: str):
    group = db.get(OrderGroup, group_id)
    if not group or group.payment_method != PaymentMethod.COD or group.payment_status == PaymentStatus.PAID:
        return
    live = [o for o in group.orders if o.status != OrderStatus.CANCELLED]
    if live and all(o.payment_status == PaymentStatus.PAID for o in live):
        group.payment_status = PaymentStatus.PAID


def cancel_order(db: Session, order_id: str, reason: Optional[str], cancelled_by: str,
                 customer_uid: Optional[str] = None) -> Order:
    with unit_of_work(db, "fulfillment.cancel"):
        order = _get_order(db, order_id)
        if customer_uid is not None and order.customer_uid != customer_uid:
            raise NotFoundError("Order not found")
        if order.status not in CANCELLABLE:
            logger.info(f"[fulfillment.cancel] refused for order {order.order_number} in {order.status.value}")
            raise InvalidStateTransitionError(f"Order is {order.status.value} and can no longer be cancelled")
        ok = compare_and_set(
            db, Order,
            [Order.id == order_id, Order.status.in_(CANCELLABLE)],
            {
                "status": OrderStatus.CANCELLED,
                "cancellation_reason": (reason or "").strip() or None,
                "cancelled_by": cancelled_by,
                "cancelled_at": datetime.utcnow(),
            },
        )
        db.refresh(order)
        if not ok:
            raise InvalidStateTransitionError(f"Order is {order.status.value} and can no longer be cancelled")
        add_tracking(db, order.id, OrderStatus.CANCELLED, order.cancellation_reason or f"Cancelled by {cancelled_by}")
    logger.info(f"[fulfillment.cancel] order {order.order_number} cancelled by {cancelled_by}")
    return order


def list_available_orders(db: Session, limit: int = 50) -> List[Order]:
    return (
        db.query(Order)
        .filter(
            Order.status == OrderStatus.UNASSIGNED,
            Order.delivery_boy_uid.is_(None),
            Order.vendor_status == VendorOrderStatus.READY_FOR_PICKUP,
            payable_filter(),
        )
        .order_by(Order.created_at.asc())
        .limit(limit)
        .all()
    )


def list_courier_orders(db: Session, courier_uid: str, active_only: bool = True) -> List[Order]:
    q = db.query(Order).filter(Order.delivery_boy_uid == courier_uid)
    if active_only:
        q = q.filter(Order.status.in_((OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY)))
    return q.order_by(Order.assigned_at.desc()).all()


def get_order_detail(db: Session, order_id: str, courier_uid: str) -> Order:
    """Open orders are visible to any courier; assigned ones only to their holder."""
    order = _get_order(db, order_id)
    if order.delivery_boy_uid is None and order.status == OrderStatus.UNASSIGNED:
        return order
    if order.delivery_boy_uid != courier_uid:
        raise NotFoundError("Order not found")
    return order
