"""Delivery OTP: issued at checkout, shown to the customer, typed in by the courier."""
import hmac
import secrets

from sqlalchemy.orm import Session

from core.config import OTP_LENGTH
from models.orders import Order


def issue_otp(length: int = OTP_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(max(4, length)))


def validate(db: Session, order_id: str, code: str) -> bool:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order or not order.delivery_otp:
        return False
    supplied = (code or "").strip()
    if not supplied:
        return False
    return hmac.compare_digest(order.delivery_otp.encode(), supplied.encode())
