"""
Vendor and delivery-partner profiles plus their payout bank accounts.

Verification flags are written by the KYC / bank review collaborators and are
read-only from the ordering core's point of view.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Float, Boolean
from core.database import Base


class Vendor(Base):
    __tablename__ = "vendors"

    uid = Column(String(128), primary_key=True, index=True)
    store_name = Column(String(255), nullable=False)
    address = Column(String(512), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    status = Column(String(16), nullable=False, default="pending")  # pending, verified, suspended
    admin_verified = Column(Boolean, nullable=False, default=False)
    kyc_status = Column(String(16), nullable=False, default="pending")  # pending, approved, rejected

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class DeliveryPartner(Base):
    __tablename__ = "delivery_partners"

    uid = Column(String(128), primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)

    admin_verification_status = Column(String(16), nullable=False, default="pending")  # pending, approved, rejected
    kyc_status = Column(String(16), nullable=False, default="pending")  # pending, completed, rejected
    availability = Column(String(16), nullable=False, default="offline")  # available, busy, offline

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    owner_uid = Column(String(128), primary_key=True, index=True)
    owner_type = Column(String(16), nullable=False)  # vendor, delivery_boy
    account_holder = Column(String(255), nullable=True)
    account_last4 = Column(String(4), nullable=True)
    ifsc = Column(String(16), nullable=True)

    is_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
