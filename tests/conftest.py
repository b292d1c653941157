import os
import uuid

# core.database refuses to import without a URL; tests bind their own engines below
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from core.auth import current_uid
from core.database import Base, build_engine, get_db, import_models
from models.cart import CartItem
from models.catalog import Product
from models.customers import Customer, CustomerAddress
from models.orders import (
    Order, OrderGroup, OrderItem, OrderStatus, PaymentMethod, PaymentStatus, VendorOrderStatus,
)
from models.partners import BankAccount, DeliveryPartner, Vendor
from models.wallets import BalanceBucket, TransactionKind, TransactionType, WalletOwnerType
from services import ledger


# Indiranagar, Bengaluru
CUSTOMER_COORDS = (12.9719, 77.6412)


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'marketplace.db'}")
    import_models()
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class Factory:
    """Seeds rows through its own session and commits each call."""

    def __init__(self, session_factory):
        self._sf = session_factory

    def _save(self, *rows):
        s = self._sf()
        try:
            for row in rows:
                s.add(row)
            s.commit()
        finally:
            s.close()

    def customer(self, uid="cust-1", with_coords=True) -> str:
        address_id = str(uuid.uuid4())
        lat, lng = CUSTOMER_COORDS if with_coords else (None, None)
        self._save(
            Customer(uid=uid, name="Asha", phone="+919800000000"),
            CustomerAddress(id=address_id, customer_uid=uid, address_line1="12 CMH Road",
                            city="Bengaluru", pincode="560038", latitude=lat, longitude=lng, is_default=True),
        )
        return address_id

    def vendor(self, uid, coords=None, verified=True):
        lat, lng = coords if coords else (None, None)
        self._save(Vendor(uid=uid, store_name=f"Store {uid}", latitude=lat, longitude=lng,
                          admin_verified=verified, kyc_status="approved" if verified else "pending"))
        return uid

    def product(self, vendor_uid, price_cents, discount_price_cents=None, product_id=None, commission_rate=None) -> str:
        product_id = product_id or f"p-{uuid.uuid4().hex[:8]}"
        self._save(Product(id=product_id, vendor_uid=vendor_uid, name=f"Item {product_id}",
                           price_cents=price_cents, discount_price_cents=discount_price_cents,
                           commission_rate=commission_rate))
        return product_id

    def cart_line(self, customer_uid, product_id, vendor_uid, unit_price_cents, quantity=1, discount_price_cents=None):
        self._save(CartItem(customer_uid=customer_uid, product_id=product_id, product_name=f"Item {product_id}",
                            vendor_uid=vendor_uid, unit_price_cents=unit_price_cents,
                            discount_price_cents=discount_price_cents, quantity=quantity))

    def courier(self, uid="rider-1", admin_status="approved", kyc_status="completed"):
        self._save(DeliveryPartner(uid=uid, name=f"Rider {uid}",
                                   admin_verification_status=admin_status, kyc_status=kyc_status))
        return uid

    def bank_account(self, owner_uid, owner_type="delivery_boy", verified=True):
        self._save(BankAccount(owner_uid=owner_uid, owner_type=owner_type, account_holder="Holder",
                               account_last4="4321", ifsc="HDFC0001234", is_verified=verified))

    def order(self, vendor_items, customer_uid="cust-1", payment_method=PaymentMethod.COD,
              payment_status=PaymentStatus.PENDING, payout_cents=2500, otp="4821",
              vendor_status=VendorOrderStatus.READY_FOR_PICKUP) -> str:
        """
        One order whose items may come from several vendors, packed and waiting
        for a courier unless `vendor_status` says otherwise.
        vendor_items: {vendor_uid: [(price_cents, quantity), ...]}
        """
        group_id = str(uuid.uuid4())
        order_id = str(uuid.uuid4())
        primary_vendor = next(iter(vendor_items))
        subtotal = sum(p * q for lines in vendor_items.values() for p, q in lines)
        group = OrderGroup(id=group_id, customer_uid=customer_uid, address_id="addr",
                           payment_method=payment_method, payment_status=payment_status,
                           subtotal_cents=subtotal, delivery_fee_cents=payout_cents,
                           total_cents=subtotal + payout_cents)
        order = Order(id=order_id, group_id=group_id, order_number=f"ORD-{uuid.uuid4().hex.upper()}",
                      customer_uid=customer_uid, vendor_uid=primary_vendor, address_id="addr",
                      status=OrderStatus.UNASSIGNED, vendor_status=vendor_status, payment_method=payment_method,
                      payment_status=payment_status, subtotal_cents=subtotal,
                      delivery_fee_cents=payout_cents, total_cents=subtotal + payout_cents,
                      item_count=sum(q for lines in vendor_items.values() for _, q in lines),
                      distance_km=2.4, payout_cents=payout_cents, delivery_otp=otp)
        items = [
            OrderItem(order_id=order_id, product_id=f"p-{uuid.uuid4().hex[:6]}", vendor_uid=vendor_uid,
                      product_name="Item", quantity=q, unit_price_cents=p, total_cents=p * q)
            for vendor_uid, lines in vendor_items.items()
            for p, q in lines
        ]
        self._save(group)
        self._save(order, *items)
        return order_id

    def wallet(self, owner_uid, owner_type=WalletOwnerType.DELIVERY_BOY, available_cents=0, pending_cents=0) -> str:
        s = self._sf()
        try:
            wallet = ledger.ensure_wallet(s, owner_uid, owner_type)
            if available_cents:
                ledger.post_transaction(s, wallet.id, TransactionType.CREDIT, available_cents, "Seed earnings",
                                        bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.EARNING)
            if pending_cents:
                ledger.post_transaction(s, wallet.id, TransactionType.CREDIT, pending_cents, "Seed earnings",
                                        bucket=BalanceBucket.PENDING, kind=TransactionKind.EARNING)
            s.commit()
            return wallet.id
        finally:
            s.close()


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


def _header_uid(request: Request):
    return request.headers.get("X-Test-Uid")


@pytest.fixture
def client(session_factory):
    from main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[current_uid] = _header_uid
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
