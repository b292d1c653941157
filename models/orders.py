"""
Order models
- order_groups: one row per checkout (a customer's multi-vendor cart)
- orders: one row per vendor inside a group, driven by the store and courier state machines
- order_items: priced lines plus the courier's per-item collected flag
- vendor_pickups: per-vendor pickup leg of an assigned order
- order_tracking: append-only status history
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, Float, Boolean, ForeignKey, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import relationship

from core.database import Base


class OrderStatus(str, enum.Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class VendorOrderStatus(str, enum.Enum):
    """Store-side progress of an order; couriers only see READY_FOR_PICKUP."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    READY_FOR_PICKUP = "ready_for_pickup"
    REJECTED = "rejected"


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    UPI = "upi"
    CARD = "card"
    WALLET = "wallet"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


ONLINE_METHODS = (PaymentMethod.UPI, PaymentMethod.CARD, PaymentMethod.WALLET)


def _enum(enum_cls, name: str):
    return SQLEnum(enum_cls, name=name, native_enum=False, length=32,
                   values_callable=lambda e: [m.value for m in e])


class OrderGroup(Base):
    __tablename__ = "order_groups"

    id = Column(String(36), primary_key=True)
    customer_uid = Column(String(128), index=True, nullable=False)
    address_id = Column(String(36), nullable=False)

    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    payment_reference = Column(String(128), nullable=True)
    coupon_code = Column(String(64), nullable=True)

    currency = Column(String(10), nullable=False, default="INR")
    subtotal_cents = Column(Integer, nullable=False, default=0)
    delivery_fee_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    orders = relationship("Order", back_populates="group", order_by="Order.created_at")

    def to_dict(self, include_orders: bool = True):
        data = {
            "id": self.id,
            "customer_uid": self.customer_uid,
            "address_id": self.address_id,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "payment_reference": self.payment_reference,
            "coupon_code": self.coupon_code,
            "currency": self.currency,
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_orders:
            data["orders"] = [o.to_dict() for o in self.orders]
        return data


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    group_id = Column(String(36), ForeignKey("order_groups.id"), index=True, nullable=False)
    order_number = Column(String(40), unique=True, index=True, nullable=False)

    customer_uid = Column(String(128), index=True, nullable=False)
    vendor_uid = Column(String(128), index=True, nullable=False)
    address_id = Column(String(36), nullable=False)

    status = Column(_enum(OrderStatus, "order_status"), index=True, nullable=False, default=OrderStatus.UNASSIGNED)
    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    delivery_boy_uid = Column(String(128), index=True, nullable=True)
    vendor_status = Column(_enum(VendorOrderStatus, "vendor_order_status"), index=True, nullable=False,
                           default=VendorOrderStatus.PENDING)

    subtotal_cents = Column(Integer, nullable=False, default=0)
    delivery_fee_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    # Coupon discounts live on the group; always zero here
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)
    item_count = Column(Integer, nullable=False, default=0)

    distance_km = Column(Float, nullable=True)
    used_fallback_fee = Column(Boolean, nullable=False, default=False)
    payout_cents = Column(Integer, nullable=False, default=0)  # courier earning for this delivery
    delivery_otp = Column(String(12), nullable=True)

    special_instructions = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    vendor_accepted_at = Column(DateTime, nullable=True)
    ready_at = Column(DateTime, nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    group = relationship("OrderGroup", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    pickups = relationship("VendorPickup", back_populates="order", cascade="all, delete-orphan", order_by="VendorPickup.id")
    tracking = relationship("OrderTracking", back_populates="order", cascade="all, delete-orphan", order_by="OrderTracking.id")

    def to_dict(self, include_otp: bool = False):
        data = {
            "id": self.id,
            "group_id": self.group_id,
            "order_number": self.order_number,
            "vendor_uid": self.vendor_uid,
            "status": self.status.value if self.status else None,
            "vendor_status": self.vendor_status.value if self.vendor_status else None,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "delivery_boy_uid": self.delivery_boy_uid,
            "cancellation_reason": self.cancellation_reason,
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "item_count": self.item_count,
            "distance_km": self.distance_km,
            "payout_cents": self.payout_cents,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "items": [i.to_dict() for i in self.items],
            "pickups": [p.to_dict() for p in self.pickups],
        }
        if include_otp:
            data["delivery_otp"] = self.delivery_otp
        return data


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String(64), nullable=False)
    vendor_uid = Column(String(128), nullable=False)
    product_name = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price_cents = Column(Integer, nullable=False, default=0)
    discount_price_cents = Column(Integer, nullable=True)
    total_cents = Column(Integer, nullable=False, default=0)
    # Copied from the product at checkout
    commission_rate = Column(Float, nullable=True)
    commission_cents = Column(Integer, nullable=True)

    collected = Column(Boolean, nullable=False, default=False)
    collected_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "vendor_uid": self.vendor_uid,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_price_cents": self.discount_price_cents,
            "total_cents": self.total_cents,
            "commission_rate": self.commission_rate,
            "commission_cents": self.commission_cents,
            "collected": bool(self.collected),
        }


class VendorPickup(Base):
    __tablename__ = "vendor_pickups"
    __table_args__ = (UniqueConstraint("order_id", "vendor_uid", name="uq_pickup_order_vendor"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    vendor_uid = Column(String(128), nullable=False)
    collected = Column(Boolean, nullable=False, default=False)
    collected_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="pickups")

    def to_dict(self):
        return {
            "vendor_uid": self.vendor_uid,
            "collected": bool(self.collected),
            "collected_at": self.collected_at.isoformat() if self.collected_at else None,
        }


class OrderTracking(Base):
    __tablename__ = "order_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    status = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="tracking")
