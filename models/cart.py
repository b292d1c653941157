"""
Cart Model
Server-side shopping cart, one row per (customer, product).
Rows are removed when the customer clears the cart or after a successful checkout.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint
from core.database import Base


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("customer_uid", "product_id", name="uq_cart_customer_product"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_uid = Column(String(128), index=True, nullable=False)

    product_id = Column(String(64), nullable=False)
    product_name = Column(String(255), nullable=True)
    vendor_uid = Column(String(128), nullable=True)  # None when the product lost its vendor

    # Price snapshot taken when the line was added
    unit_price_cents = Column(Integer, nullable=False, default=0)
    discount_price_cents = Column(Integer, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "vendor_uid": self.vendor_uid,
            "unit_price_cents": self.unit_price_cents,
            "discount_price_cents": self.discount_price_cents,
            "quantity": self.quantity,
        }
