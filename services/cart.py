"""Server-side cart: one row per (customer, product), priced from the catalog when added."""
from typing import List

from sqlalchemy.orm import Session

from core.config import logger
from core.errors import NotFoundError, ValidationError
from models.cart import CartItem
from models.catalog import Product
from utils.pricing import line_total


def list_cart(db: Session, customer_uid: str) -> List[CartItem]:
    return (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid)
        .order_by(CartItem.id.asc())
        .all()
    )


def cart_summary(db: Session, customer_uid: str) -> dict:
    lines = list_cart(db, customer_uid)
    return {
        "items": [line.to_dict() for line in lines],
        "item_count": sum(line.quantity for line in lines),
        "subtotal_cents": sum(line_total(line) for line in lines),
    }


def add_item(db: Session, customer_uid: str, product_id: str, quantity: int = 1) -> CartItem:
    if quantity <= 0:
        raise ValidationError("Quantity must be at least 1")
    product = db.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFoundError("Product not available")

    line = (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid, CartItem.product_id == product_id)
        .first()
    )
    if line:
        line.quantity += quantity
    else:
        line = CartItem(customer_uid=customer_uid, product_id=product_id, quantity=quantity)
        db.add(line)
    # Re-snapshot price on every add
    line.product_name = product.name
    line.vendor_uid = product.vendor_uid
    line.unit_price_cents = product.price_cents
    line.discount_price_cents = product.discount_price_cents
    db.flush()
    return line


def update_quantity(db: Session, customer_uid: str, product_id: str, delta: int):
    """Apply a quantity delta. A result of zero or less removes the line and returns None."""
    line = (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid, CartItem.product_id == product_id)
        .first()
    )
    if not line:
        raise NotFoundError("Item not in cart")
    new_qty = line.quantity + int(delta)
    if new_qty <= 0:
        db.delete(line)
        db.flush()
        return None
    line.quantity = new_qty
    db.flush()
    return line


def remove_item(db: Session, customer_uid: str, product_id: str) -> bool:
    deleted = (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid, CartItem.product_id == product_id)
        .delete(synchronize_session=False)
    )
    return deleted > 0


def clear_cart(db: Session, customer_uid: str) -> int:
    deleted = (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid)
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info(f"[cart] cleared {deleted} line(s) for {customer_uid}")
    return deleted


def remove_products(db: Session, customer_uid: str, product_ids: List[str]) -> int:
    """Drop only the given products, leaving lines added after an order was placed."""
    if not product_ids:
        return 0
    deleted = (
        db.query(CartItem)
        .filter(CartItem.customer_uid == customer_uid, CartItem.product_id.in_(product_ids))
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info(f"[cart] removed {deleted} ordered line(s) for {customer_uid}")
    return deleted
