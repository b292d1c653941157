from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from core.database import unit_of_work
from core.errors import EmptyCartError, NotFoundError, PersistenceError, StateConflictError, ValidationError
from models.cart import CartItem
from models.catalog import Product
from models.coupons import Coupon, CouponUsage
from models.orders import (
    Order, OrderGroup, OrderStatus, OrderTracking, PaymentMethod, PaymentStatus, VendorOrderStatus,
)
from services import checkout as checkout_service
from services.checkout import checkout, confirm_group_payment, decompose_cart, quote_cart
from services.coupons import ActiveDiscount
from utils.fees import FeeEstimate
from utils.payments import PaymentGateway, PaymentResult

STORE_COORDS = [(12.9784, 77.6408), (12.9591, 77.6474), (12.9352, 77.6245)]


def _line(vendor, price, qty=1, discount=None, product_id=None):
    return SimpleNamespace(product_id=product_id or f"{vendor}-{price}", product_name="Item", vendor_uid=vendor,
                           unit_price_cents=price, discount_price_cents=discount, quantity=qty)


FEES = {
    "v1": FeeEstimate(2000, 1.2),
    "v2": FeeEstimate(2500, 2.4),
    "v3": FeeEstimate(3500, 4.4),
}


class StubGateway(PaymentGateway):
    def __init__(self, result):
        self.result = result
        self.calls = []

    def charge(self, order_group_id, amount_cents):
        self.calls.append((order_group_id, amount_cents))
        return self.result


# --- decompose_cart ---

def test_one_draft_per_vendor_and_sums_reconcile():
    lines = [_line("v1", 4000, 2), _line("v2", 1500, 3, discount=1200), _line("v1", 999), _line("v3", 2500)]
    cart = decompose_cart(lines, "addr-1", None, FEES, tax_rate=0, free_delivery_min_cents=0)

    assert len(cart.orders) == 3
    assert {d.vendor_uid for d in cart.orders} == {"v1", "v2", "v3"}
    assert sum(d.subtotal_cents for d in cart.orders) == cart.group_subtotal == 8000 + 999 + 3600 + 2500
    assert cart.group_delivery_fee == 2000 + 2500 + 3500
    assert cart.group_discount == 0
    assert cart.group_total == cart.group_subtotal + cart.group_delivery_fee
    v1 = next(d for d in cart.orders if d.vendor_uid == "v1")
    assert v1.item_count == 3
    assert v1.distance_km == 1.2


def test_order_numbers_are_unique():
    lines = [_line(f"v{i}", 1000) for i in range(20)]
    cart = decompose_cart(lines, "addr-1", None, {}, free_delivery_min_cents=0)
    numbers = [d.order_number for d in cart.orders]
    assert len(set(numbers)) == 20
    assert all(n.startswith("ORD-") and len(n) == 36 for n in numbers)


def test_lines_without_vendor_are_dropped():
    cart = decompose_cart([_line("v1", 1000), _line(None, 5000)], "addr-1", None, FEES, free_delivery_min_cents=0)
    assert len(cart.orders) == 1
    assert cart.group_subtotal == 1000


def test_no_resolvable_vendor_is_an_empty_cart():
    with pytest.raises(EmptyCartError):
        decompose_cart([_line(None, 5000)], "addr-1", None, FEES)
    with pytest.raises(EmptyCartError):
        decompose_cart([], "addr-1", None, FEES)


def test_missing_estimate_uses_flagged_fallback():
    cart = decompose_cart([_line("unknown", 1000)], "addr-1", None, FEES, free_delivery_min_cents=0)
    draft = cart.orders[0]
    assert draft.delivery_fee_cents == 3000
    assert draft.distance_km == 5.0
    assert draft.used_fallback_fee is True


def test_tax_is_per_vendor():
    cart = decompose_cart([_line("v1", 10500), _line("v2", 11000)], "addr-1", None, FEES,
                          tax_rate=0.05, free_delivery_min_cents=0)
    assert [d.tax_cents for d in cart.orders] == [525, 550]
    assert cart.group_tax == 1075


def test_free_delivery_coupon_waives_fee_but_keeps_payout():
    discount = ActiveDiscount(code="FREESHIP", amount_cents=0, free_delivery=True)
    cart = decompose_cart([_line("v1", 1000), _line("v2", 1000)], "addr-1", discount, FEES, free_delivery_min_cents=0)
    assert cart.group_delivery_fee == 0
    assert [d.payout_cents for d in cart.orders] == [2000, 2500]


def test_free_delivery_threshold():
    lines = [_line("v1", 30000), _line("v2", 20000)]
    waived = decompose_cart(lines, "addr-1", None, FEES, free_delivery_min_cents=49900)
    assert waived.group_delivery_fee == 0
    charged = decompose_cart(lines, "addr-1", None, FEES, free_delivery_min_cents=0)
    assert charged.group_delivery_fee == 4500


def test_discount_stays_at_group_level():
    discount = ActiveDiscount(code="SAVE50", amount_cents=5000)
    cart = decompose_cart([_line("v1", 4000), _line("v2", 6000)], "addr-1", discount, FEES, free_delivery_min_cents=0)
    assert cart.group_discount == 5000
    assert cart.group_total == 10000 + 4500 - 5000
    assert all(not hasattr(d, "discount_cents") for d in cart.orders)


# --- persisted checkout ---

@pytest.fixture
def shop(factory):
    """Customer with two vendors' products in the cart."""
    address_id = factory.customer("cust-1")
    for i, uid in enumerate(("v1", "v2", "v3")):
        factory.vendor(uid, coords=STORE_COORDS[i])
    factory.cart_line("cust-1", "milk", "v1", 6000, quantity=2)
    factory.cart_line("cust-1", "bread", "v1", 4500, discount_price_cents=4000)
    factory.cart_line("cust-1", "apples", "v2", 12000)
    return address_id


def test_cod_checkout_creates_group_and_clears_cart(db, shop):
    result = checkout(db, "cust-1", shop, "cod")

    assert result.payment_method == PaymentMethod.COD
    assert result.cart_cleared is True
    assert db.query(CartItem).count() == 0

    group = db.get(OrderGroup, result.group_id)
    assert len(group.orders) == 2
    assert group.subtotal_cents == sum(o.subtotal_cents for o in group.orders) == 12000 + 4000 + 12000
    assert group.total_cents == group.subtotal_cents + group.delivery_fee_cents
    for order in group.orders:
        assert order.status == OrderStatus.UNASSIGNED
        assert order.vendor_status == VendorOrderStatus.PENDING
        assert order.discount_cents == 0
        assert order.delivery_otp and len(order.delivery_otp) == 4
        assert order.used_fallback_fee is False
        assert db.query(OrderTracking).filter(OrderTracking.order_id == order.id).count() == 1
    v1 = next(o for o in group.orders if o.vendor_uid == "v1")
    assert v1.item_count == 3
    assert len(v1.items) == 2


def test_quote_persists_nothing(db, shop):
    cart = quote_cart(db, "cust-1", shop)
    assert len(cart.orders) == 2
    assert db.query(OrderGroup).count() == 0
    assert db.query(CartItem).count() == 3


def test_vendor_without_coordinates_is_flagged(db, factory):
    address_id = factory.customer("cust-1")
    factory.vendor("nogps")
    factory.cart_line("cust-1", "eggs", "nogps", 9000)
    result = checkout(db, "cust-1", address_id, "cod")
    order = db.get(OrderGroup, result.group_id).orders[0]
    assert order.used_fallback_fee is True
    assert order.delivery_fee_cents == 3000
    assert order.distance_km == 5.0


def test_failure_mid_group_persists_nothing(db, factory):
    address_id = factory.customer("cust-1")
    for i, uid in enumerate(("v1", "v2", "v3")):
        factory.vendor(uid, coords=STORE_COORDS[i])
        factory.cart_line("cust-1", f"p{i}", uid, 5000)

    inserted = []

    def fail_on_third(mapper, connection, target):
        inserted.append(target.order_number)
        if len(inserted) == 3:
            raise OperationalError("INSERT INTO orders", {}, Exception("connection lost"))

    event.listen(Order, "before_insert", fail_on_third)
    try:
        with pytest.raises(PersistenceError):
            checkout(db, "cust-1", address_id, "cod")
    finally:
        event.remove(Order, "before_insert", fail_on_third)

    assert len(inserted) == 3
    assert db.query(Order).count() == 0
    assert db.query(OrderGroup).count() == 0
    assert db.query(CartItem).count() == 3


def test_unknown_address_and_customer(db, factory, shop):
    with pytest.raises(NotFoundError):
        checkout(db, "cust-1", "no-such-address", "cod")
    with pytest.raises(ValidationError):
        checkout(db, "cust-1", shop, "bitcoin")
    cart = quote_cart(db, "cust-1", shop)
    with pytest.raises(NotFoundError):
        checkout_service.create_order_group(db, "ghost", PaymentMethod.COD, None, cart, cart.orders)
    assert db.query(OrderGroup).count() == 0


def test_create_order_group_validates_before_writing(db, shop):
    cart = quote_cart(db, "cust-1", shop)
    with pytest.raises(ValidationError):
        checkout_service.create_order_group(db, "cust-1", PaymentMethod.COD, None, cart, [])
    with pytest.raises(ValidationError):
        checkout_service.create_order_group(db, "cust-1", None, None, cart, cart.orders)


def test_coupon_applies_once_per_customer(db, session_factory, shop):
    s = session_factory()
    s.add(Coupon(code="WELCOME50", discount_type="flat", discount_value=5000, min_order_cents=10000))
    s.commit()
    s.close()

    result = checkout(db, "cust-1", shop, "cod", coupon_code="welcome50")
    group = db.get(OrderGroup, result.group_id)
    assert group.coupon_code == "WELCOME50"
    assert group.discount_cents == 5000
    assert group.total_cents == group.subtotal_cents + group.delivery_fee_cents - 5000
    assert all(o.discount_cents == 0 for o in group.orders)
    assert db.query(CouponUsage).count() == 1
    assert db.query(Coupon).first().usage_count == 1

    db.add(CartItem(customer_uid="cust-1", product_id="milk", vendor_uid="v1", unit_price_cents=60000, quantity=1))
    db.commit()
    with pytest.raises(ValidationError):
        checkout(db, "cust-1", shop, "cod", coupon_code="WELCOME50")


def test_expired_and_below_minimum_coupons(db, session_factory, shop):
    s = session_factory()
    s.add(Coupon(code="OLD", discount_type="flat", discount_value=1000, end_date=datetime.utcnow() - timedelta(days=1)))
    s.add(Coupon(code="BIG", discount_type="percent", discount_value=10, min_order_cents=1000000))
    s.commit()
    s.close()
    with pytest.raises(ValidationError):
        quote_cart(db, "cust-1", shop, "OLD")
    with pytest.raises(ValidationError):
        quote_cart(db, "cust-1", shop, "BIG")


# --- online payment handling ---

def test_online_method_falls_back_to_cod_while_disabled(db, shop, monkeypatch):
    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", False)
    gateway = StubGateway(PaymentResult.succeeded("pay_1"))
    result = checkout(db, "cust-1", shop, "upi", gateway=gateway)
    assert result.payment_method == PaymentMethod.COD
    assert gateway.calls == []
    assert result.cart_cleared is True


def test_successful_charge_marks_paid_and_clears_cart(db, shop, monkeypatch):
    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", True)
    gateway = StubGateway(PaymentResult.succeeded("pay_123"))
    result = checkout(db, "cust-1", shop, "card", gateway=gateway)

    group = db.get(OrderGroup, result.group_id)
    assert gateway.calls == [(group.id, group.total_cents)]
    assert group.payment_status == PaymentStatus.PAID
    assert group.payment_reference == "pay_123"
    assert all(o.payment_status == PaymentStatus.PAID for o in group.orders)
    assert result.cart_cleared is True
    assert db.query(CartItem).count() == 0


def test_pending_charge_keeps_cart_until_confirmed(db, shop, monkeypatch):
    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", True)
    result = checkout(db, "cust-1", shop, "upi", gateway=StubGateway(PaymentResult.pending("awaiting UPI approval")))

    group = db.get(OrderGroup, result.group_id)
    assert group.payment_status == PaymentStatus.PENDING
    assert result.cart_cleared is False
    assert db.query(CartItem).count() == 3

    confirm_group_payment(db, group.id, PaymentResult.succeeded("pay_late"))
    db.refresh(group)
    assert group.payment_status == PaymentStatus.PAID
    assert db.query(CartItem).count() == 0


def test_failed_charge_cancels_orders_and_keeps_cart(db, shop, monkeypatch):
    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", True)
    result = checkout(db, "cust-1", shop, "card", gateway=StubGateway(PaymentResult.failed("card declined")))

    group = db.get(OrderGroup, result.group_id)
    assert group.payment_status == PaymentStatus.FAILED
    assert all(o.status == OrderStatus.CANCELLED for o in group.orders)
    assert result.cart_cleared is False
    assert db.query(CartItem).count() == 3

    # A late success cannot revive a failed group
    confirm_group_payment(db, group.id, PaymentResult.succeeded("pay_x"))
    db.refresh(group)
    assert group.payment_status == PaymentStatus.FAILED


def test_late_success_keeps_lines_added_after_checkout(db, factory, shop, monkeypatch):
    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", True)
    result = checkout(db, "cust-1", shop, "upi", gateway=StubGateway(PaymentResult.pending("awaiting UPI approval")))
    factory.cart_line("cust-1", "butter", "v2", 5500)

    confirm_group_payment(db, result.group_id, PaymentResult.succeeded("pay_late"))
    assert [line.product_id for line in db.query(CartItem).all()] == ["butter"]


def test_unexpected_error_mid_group_is_rolled_back(db, factory, monkeypatch):
    address_id = factory.customer("cust-1")
    for i, uid in enumerate(("v1", "v2", "v3")):
        factory.vendor(uid, coords=STORE_COORDS[i])
        factory.cart_line("cust-1", f"p{i}", uid, 5000)

    real_add_tracking = checkout_service.add_tracking
    calls = []

    def fail_on_second(session, order_id, status, description=None):
        calls.append(order_id)
        if len(calls) == 2:
            raise RuntimeError("tracking write blew up")
        return real_add_tracking(session, order_id, status, description)

    monkeypatch.setattr(checkout_service, "add_tracking", fail_on_second)
    with pytest.raises(RuntimeError):
        checkout(db, "cust-1", address_id, "cod")

    # The next request on the same session commits whatever is still pending
    with unit_of_work(db, "next_request"):
        pass
    assert db.query(Order).count() == 0
    assert db.query(OrderGroup).count() == 0
    assert db.query(CartItem).count() == 3


def test_failed_charge_gives_the_coupon_back(db, session_factory, shop, monkeypatch):
    s = session_factory()
    s.add(Coupon(code="ONCE", discount_type="flat", discount_value=2000, usage_limit=10, usage_limit_per_user=1))
    s.commit()
    s.close()

    monkeypatch.setattr(checkout_service, "ONLINE_PAYMENTS_ENABLED", True)
    failed = checkout(db, "cust-1", shop, "card", coupon_code="ONCE",
                      gateway=StubGateway(PaymentResult.failed("card declined")))
    assert db.get(OrderGroup, failed.group_id).payment_status == PaymentStatus.FAILED
    db.expire_all()
    assert db.query(CouponUsage).count() == 0
    assert db.query(Coupon).one().usage_count == 0

    retry = checkout(db, "cust-1", shop, "cod", coupon_code="ONCE")
    assert db.get(OrderGroup, retry.group_id).discount_cents == 2000
    db.expire_all()
    assert db.query(Coupon).one().usage_count == 1


def test_last_coupon_slot_goes_to_one_checkout(session_factory, factory):
    addresses = {}
    for i, uid in enumerate(("cust-a", "cust-b")):
        addresses[uid] = factory.customer(uid)
        factory.vendor(f"v{i}", coords=STORE_COORDS[i])
        factory.cart_line(uid, f"p{i}", f"v{i}", 8000)
    s = session_factory()
    s.add(Coupon(code="LAST1", discount_type="flat", discount_value=1000, usage_limit=1))
    s.commit()
    s.close()

    first, second = session_factory(), session_factory()
    try:
        # Both customers saw the coupon as still available
        quote_a = quote_cart(first, "cust-a", addresses["cust-a"], "LAST1")
        quote_b = quote_cart(second, "cust-b", addresses["cust-b"], "LAST1")

        checkout_service.create_order_group(first, "cust-a", PaymentMethod.COD, "LAST1", quote_a, quote_a.orders)
        with pytest.raises(StateConflictError):
            checkout_service.create_order_group(second, "cust-b", PaymentMethod.COD, "LAST1", quote_b, quote_b.orders)
    finally:
        first.close()
        second.close()

    check = session_factory()
    assert check.query(Coupon).one().usage_count == 1
    assert [u.customer_uid for u in check.query(CouponUsage).all()] == ["cust-a"]
    assert [g.customer_uid for g in check.query(OrderGroup).all()] == ["cust-a"]
    check.close()


def test_commission_rate_is_copied_onto_each_item(db, session_factory, factory):
    address_id = factory.customer("cust-1")
    factory.vendor("v1", coords=STORE_COORDS[0])
    premium = factory.product("v1", 10000, commission_rate=0.05)
    staple = factory.product("v1", 20000)
    factory.cart_line("cust-1", premium, "v1", 10000)
    factory.cart_line("cust-1", staple, "v1", 20000)

    result = checkout(db, "cust-1", address_id, "cod")

    s = session_factory()
    s.get(Product, premium).commission_rate = 0.2
    s.commit()
    s.close()

    db.expire_all()
    items = {i.product_id: i for i in db.get(OrderGroup, result.group_id).orders[0].items}
    assert (items[premium].commission_rate, items[premium].commission_cents) == (0.05, 500)
    assert (items[staple].commission_rate, items[staple].commission_cents) == (0.005, 100)
