"""
Checkout: cart decomposition, the order-group transaction and payment handling.

A customer's cart may span several vendors. decompose_cart turns it into one
VendorOrderDraft per vendor plus group totals, without touching the database.
create_order_group then persists the whole group in a single transaction, so
either every vendor order exists or none does. The cart is cleared only once
the money side is settled: right away for cash on delivery, and for online
methods after a successful charge, which removes just the ordered products.
"""
import uuid
from datetime import datetime
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.config import (
    logger, CURRENCY, FREE_DELIVERY_MIN_CENTS, ONLINE_PAYMENTS_ENABLED, PLATFORM_COMMISSION_RATE, TAX_RATE,
)
from core.database import compare_and_set, unit_of_work
from core.errors import EmptyCartError, NotFoundError, ValidationError
from models.catalog import Product
from models.customers import Customer, CustomerAddress
from models.orders import (
    ONLINE_METHODS, Order, OrderGroup, OrderItem, OrderStatus, PaymentMethod, PaymentStatus,
)
from services.cart import clear_cart, list_cart, remove_products
from services.coupons import ActiveDiscount, record_usage, release_usage, validate_coupon
from services.fulfillment import add_tracking
from utils.fees import FALLBACK_ESTIMATE, FeeEstimate, build_fee_lookup
from utils.otp import issue_otp
from utils.payments import PaymentGateway, PaymentOutcome, PaymentResult, default_gateway
from utils.pricing import compute_tax, line_total, platform_commission, vendor_subtotal


@dataclass(frozen=True)
class DraftLine:
    product_id: str
    product_name: Optional[str]
    vendor_uid: str
    unit_price_cents: int
    discount_price_cents: Optional[int]
    quantity: int

    @property
    def total_cents(self) -> int:
        return line_total(self)


@dataclass(frozen=True)
class VendorOrderDraft:
    vendor_uid: str
    address_id: str
    lines: Tuple[DraftLine, ...]
    subtotal_cents: int
    delivery_fee_cents: int
    distance_km: float
    tax_cents: int
    item_count: int
    order_number: str
    payout_cents: int
    used_fallback_fee: bool = False

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.delivery_fee_cents + self.tax_cents


@dataclass(frozen=True)
class DecomposedCart:
    address_id: str
    orders: Tuple[VendorOrderDraft, ...]
    group_subtotal: int
    group_delivery_fee: int
    group_tax: int
    group_discount: int
    discount: Optional[ActiveDiscount] = None

    @property
    def group_total(self) -> int:
        return self.group_subtotal + self.group_delivery_fee + self.group_tax - self.group_discount

    def to_dict(self) -> dict:
        return {
            "address_id": self.address_id,
            "currency": CURRENCY,
            "subtotal_cents": self.group_subtotal,
            "delivery_fee_cents": self.group_delivery_fee,
            "tax_cents": self.group_tax,
            "discount_cents": self.group_discount,
            "total_cents": self.group_total,
            "coupon_code": self.discount.code if self.discount else None,
            "orders": [
                {
                    "vendor_uid": d.vendor_uid,
                    "order_number": d.order_number,
                    "subtotal_cents": d.subtotal_cents,
                    "delivery_fee_cents": d.delivery_fee_cents,
                    "distance_km": d.distance_km,
                    "tax_cents": d.tax_cents,
                    "item_count": d.item_count,
                    "total_cents": d.total_cents,
                    "used_fallback_fee": d.used_fallback_fee,
                }
                for d in self.orders
            ],
        }


@dataclass
class CheckoutResult:
    group_id: str
    payment_method: PaymentMethod
    payment: Optional[PaymentResult] = None
    cart_cleared: bool = False
    order_ids: List[str] = field(default_factory=list)


def new_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex.upper()}"


def _snapshot(line) -> DraftLine:
    return DraftLine(
        product_id=line.product_id,
        product_name=line.product_name,
        vendor_uid=line.vendor_uid,
        unit_price_cents=int(line.unit_price_cents),
        discount_price_cents=None if line.discount_price_cents is None else int(line.discount_price_cents),
        quantity=int(line.quantity),
    )


def decompose_cart(
    lines: Iterable,
    address_id: str,
    discount: Optional[ActiveDiscount],
    fee_lookup: Dict[str, FeeEstimate],
    tax_rate: float = TAX_RATE,
    free_delivery_min_cents: int = FREE_DELIVERY_MIN_CENTS,
) -> DecomposedCart:
    """
    Split cart lines into one draft per vendor and total the group.

    Lines without a vendor are dropped. A vendor missing from `fee_lookup`
    gets the fallback estimate. The delivery fee is waived on every draft when
    the discount grants free delivery or the cart subtotal reaches
    `free_delivery_min_cents` (0 disables the threshold); the courier payout
    stays the estimated fee either way. The discount is applied once at group
    level and never copied onto drafts.

    Raises EmptyCartError when no draft can be built.
    """
    partitions: "OrderedDict[str, List[DraftLine]]" = OrderedDict()
    for line in lines:
        if not line.vendor_uid:
            logger.warning(f"[checkout] dropping cart line product={line.product_id} with no vendor")
            continue
        partitions.setdefault(line.vendor_uid, []).append(_snapshot(line))

    if not partitions:
        raise EmptyCartError("Your cart is empty")

    cart_subtotal = sum(vendor_subtotal(v) for v in partitions.values())
    waive_fee = bool(discount and discount.free_delivery) or (
        free_delivery_min_cents > 0 and cart_subtotal >= free_delivery_min_cents
    )

    drafts = []
    for vendor_uid, vendor_lines in partitions.items():
        subtotal = vendor_subtotal(vendor_lines)
        estimate = fee_lookup.get(vendor_uid)
        if estimate is None:
            logger.warning(f"[checkout] no fee estimate for vendor={vendor_uid}; using fallback")
            estimate = FALLBACK_ESTIMATE
        drafts.append(VendorOrderDraft(
            vendor_uid=vendor_uid,
            address_id=address_id,
            lines=tuple(vendor_lines),
            subtotal_cents=subtotal,
            delivery_fee_cents=0 if waive_fee else estimate.fee_cents,
            distance_km=estimate.distance_km,
            tax_cents=compute_tax(subtotal, tax_rate),
            item_count=sum(line.quantity for line in vendor_lines),
            order_number=new_order_number(),
            payout_cents=estimate.fee_cents,
            used_fallback_fee=estimate.used_fallback,
        ))

    group_subtotal = sum(d.subtotal_cents for d in drafts)
    group_discount = min(discount.amount_cents, group_subtotal) if discount else 0
    return DecomposedCart(
        address_id=address_id,
        orders=tuple(drafts),
        group_subtotal=group_subtotal,
        group_delivery_fee=sum(d.delivery_fee_cents for d in drafts),
        group_tax=sum(d.tax_cents for d in drafts),
        group_discount=group_discount,
        discount=discount,
    )


def parse_payment_method(value) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError("Select a valid payment method")


def _load_address(db: Session, customer_uid: str, address_id: str) -> CustomerAddress:
    if not address_id:
        raise ValidationError("Select a delivery address")
    address = db.get(CustomerAddress, address_id)
    if not address or address.customer_uid != customer_uid:
        raise NotFoundError("Delivery address not found")
    return address


def _commission_rates(db: Session, drafts: List[VendorOrderDraft]) -> Dict[str, float]:
    """Per-product commission rate, falling back to the platform default."""
    product_ids = {line.product_id for d in drafts for line in d.lines}
    rates = {pid: PLATFORM_COMMISSION_RATE for pid in product_ids}
    if product_ids:
        for pid, rate in db.query(Product.id, Product.commission_rate).filter(Product.id.in_(product_ids)):
            if rate is not None:
                rates[pid] = rate
    return rates


def quote_cart(db: Session, customer_uid: str, address_id: str, coupon_code: Optional[str] = None) -> DecomposedCart:
    """Checkout preview: same decomposition, nothing persisted."""
    address = _load_address(db, customer_uid, address_id)
    lines = list_cart(db, customer_uid)
    discount = None
    if coupon_code:
        priced = [line for line in lines if line.vendor_uid]
        discount = validate_coupon(db, coupon_code, customer_uid, vendor_subtotal(priced))
    fee_lookup = build_fee_lookup(db, [line.vendor_uid for line in lines if line.vendor_uid], address)
    return decompose_cart(lines, address.id, discount, fee_lookup)


def create_order_group(
    db: Session,
    customer_uid: str,
    payment_method: PaymentMethod,
    coupon_code: Optional[str],
    totals: DecomposedCart,
    drafts: Iterable[VendorOrderDraft],
    special_instructions: Optional[str] = None,
) -> str:
    """Persist one group and all of its vendor orders atomically. Returns the group id."""
    drafts = list(drafts)
    if not payment_method:
        raise ValidationError("Select a payment method")
    if not drafts:
        raise ValidationError("Nothing to order")
    if not totals.address_id or any(d.address_id != totals.address_id for d in drafts):
        raise ValidationError("Select a delivery address")

    with unit_of_work(db, "checkout.create_group"):
        if not db.get(Customer, customer_uid):
            raise NotFoundError("Customer not found")
        _load_address(db, customer_uid, totals.address_id)
        rates = _commission_rates(db, drafts)

        group = OrderGroup(
            id=str(uuid.uuid4()),
            customer_uid=customer_uid,
            address_id=totals.address_id,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            coupon_code=coupon_code,
            currency=CURRENCY,
            subtotal_cents=totals.group_subtotal,
            delivery_fee_cents=totals.group_delivery_fee,
            tax_cents=totals.group_tax,
            discount_cents=totals.group_discount,
            total_cents=totals.group_total,
        )
        db.add(group)
        db.flush()

        for draft in drafts:
            order = Order(
                id=str(uuid.uuid4()),
                group_id=group.id,
                order_number=draft.order_number,
                customer_uid=customer_uid,
                vendor_uid=draft.vendor_uid,
                address_id=draft.address_id,
                status=OrderStatus.UNASSIGNED,
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING,
                subtotal_cents=draft.subtotal_cents,
                delivery_fee_cents=draft.delivery_fee_cents,
                tax_cents=draft.tax_cents,
                discount_cents=0,
                total_cents=draft.total_cents,
                item_count=draft.item_count,
                distance_km=draft.distance_km,
                used_fallback_fee=draft.used_fallback_fee,
                payout_cents=draft.payout_cents,
                delivery_otp=issue_otp(),
                special_instructions=special_instructions,
            )
            db.add(order)
            for line in draft.lines:
                rate = rates[line.product_id]
                db.add(OrderItem(
                    order=order,
                    product_id=line.product_id,
                    vendor_uid=line.vendor_uid,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    discount_price_cents=line.discount_price_cents,
                    total_cents=line.total_cents,
                    commission_rate=rate,
                    commission_cents=platform_commission(line.total_cents, rate),
                ))
            db.flush()
            add_tracking(db, order.id, OrderStatus.UNASSIGNED, "Order placed")
            if draft.used_fallback_fee:
                logger.warning(f"[checkout] order {draft.order_number} priced with fallback delivery fee")

        if totals.discount:
            record_usage(db, totals.discount, customer_uid, group.id)

    logger.info(f"[checkout] group {group.id} created with {len(drafts)} order(s) total={totals.group_total}")
    return group.id


def checkout(
    db: Session,
    customer_uid: str,
    address_id: str,
    payment_method,
    coupon_code: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    special_instructions: Optional[str] = None,
) -> CheckoutResult:
    method = parse_payment_method(payment_method)
    if method in ONLINE_METHODS and not ONLINE_PAYMENTS_ENABLED:
        logger.info(f"[checkout] online payment ({method.value}) unavailable, falling back to cod for {customer_uid}")
        method = PaymentMethod.COD

    totals = quote_cart(db, customer_uid, address_id, coupon_code)
    group_id = create_order_group(
        db, customer_uid, method, totals.discount.code if totals.discount else None,
        totals, totals.orders, special_instructions=special_instructions,
    )
    group = db.get(OrderGroup, group_id)
    result = CheckoutResult(group_id=group_id, payment_method=method, order_ids=[o.id for o in group.orders])

    if method == PaymentMethod.COD:
        with unit_of_work(db, "checkout.clear_cart"):
            clear_cart(db, customer_uid)
        result.cart_cleared = True
        return result

    gateway = gateway or default_gateway()
    payment = gateway.charge(group_id, totals.group_total)
    result.payment = payment
    confirm_group_payment(db, group_id, payment)
    result.cart_cleared = payment.outcome == PaymentOutcome.SUCCEEDED
    return result


def confirm_group_payment(db: Session, group_id: str, result: PaymentResult) -> OrderGroup:
    """
    Apply a gateway verdict to a group still awaiting payment.

    SUCCEEDED marks the group and its orders paid and removes the ordered
    products from the cart; lines added since checkout stay.
    FAILED marks the group failed, cancels its orders and gives back any coupon
    slot it took; the cart is kept.
    PENDING changes nothing.
    """
    with unit_of_work(db, "checkout.payment"):
        group = db.get(OrderGroup, group_id)
        if not group:
            raise NotFoundError("Order group not found")
        if result.outcome == PaymentOutcome.PENDING:
            logger.info(f"[checkout] payment pending group={group_id} reason={result.reason}")
            return group

        target = PaymentStatus.PAID if result.outcome == PaymentOutcome.SUCCEEDED else PaymentStatus.FAILED
        if group.payment_status == target:
            return group
        moved = compare_and_set(
            db, OrderGroup,
            [OrderGroup.id == group_id, OrderGroup.payment_status == PaymentStatus.PENDING],
            {"payment_status": target, "payment_reference": result.reference},
        )
        db.refresh(group)
        if not moved:
            logger.warning(f"[checkout] ignoring {result.outcome.value} for group={group_id} already {group.payment_status.value}")
            return group

        for order in group.orders:
            if target == PaymentStatus.PAID:
                order.payment_status = PaymentStatus.PAID
                add_tracking(db, order.id, order.status, "Payment received")
            else:
                order.payment_status = PaymentStatus.FAILED
                if order.status == OrderStatus.UNASSIGNED:
                    order.status = OrderStatus.CANCELLED
                    order.cancellation_reason = f"Payment failed: {result.reason or 'declined'}"
                    order.cancelled_by = "system"
                    order.cancelled_at = datetime.utcnow()
                    add_tracking(db, order.id, OrderStatus.CANCELLED, order.cancellation_reason)

        if target == PaymentStatus.PAID:
            ordered = sorted({item.product_id for order in group.orders for item in order.items})
            remove_products(db, group.customer_uid, ordered)
            logger.info(f"[checkout] payment succeeded group={group_id} ref={result.reference}")
        else:
            release_usage(db, group.id)
            logger.warning(f"[checkout] payment failed group={group_id} reason={result.reason}")
    return group
