from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Float
from core.database import Base


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, index=True, nullable=False)  # stored upper-case
    name = Column(String(255), nullable=True)

    discount_type = Column(String(16), nullable=False, default="flat")  # flat, percent
    discount_value = Column(Float, nullable=False, default=0)  # cents for flat, percent for percent
    max_discount_cents = Column(Integer, nullable=True)
    min_order_cents = Column(Integer, nullable=False, default=0)
    free_delivery = Column(Boolean, nullable=False, default=False)

    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit_per_user = Column(Integer, nullable=False, default=1)

    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, index=True, nullable=False)
    customer_uid = Column(String(128), index=True, nullable=False)
    order_group_id = Column(String(36), nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    used_at = Column(DateTime, default=datetime.utcnow, nullable=False)
