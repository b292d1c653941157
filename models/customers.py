"""
Customer records and saved delivery addresses.
Profiles are owned by the auth/profile collaborators; checkout only reads them.
"""
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Float, Boolean
from core.database import Base


class Customer(Base):
    __tablename__ = "customers"

    uid = Column(String(128), primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CustomerAddress(Base):
    __tablename__ = "customer_addresses"

    id = Column(String(36), primary_key=True)
    customer_uid = Column(String(128), index=True, nullable=False)

    address_type = Column(String(16), nullable=False, default="home")  # home, work, other
    address_line1 = Column(Text, nullable=False)
    address_line2 = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    pincode = Column(String(12), nullable=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "address_type": self.address_type,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }
