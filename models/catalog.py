from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Float
from core.database import Base


class Product(Base):
    """Just enough of a catalog entry to price an order line."""
    __tablename__ = "products"

    id = Column(String(64), primary_key=True)
    vendor_uid = Column(String(128), index=True, nullable=True)
    name = Column(String(255), nullable=False)
    unit = Column(String(32), nullable=True)  # "500 g", "1 L"

    price_cents = Column(Integer, nullable=False, default=0)
    discount_price_cents = Column(Integer, nullable=True)
    # Fraction of the line total kept by the platform; NULL means the global default
    commission_rate = Column(Float, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
