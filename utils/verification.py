"""
Read-only gates fed by the KYC and bank-review collaborators.
A missing profile is treated as unverified.
"""
from sqlalchemy.orm import Session

from models.partners import BankAccount, DeliveryPartner, Vendor


def is_admin_verified(db: Session, uid: str) -> bool:
    partner = db.query(DeliveryPartner).filter(DeliveryPartner.uid == uid).first()
    if partner:
        return partner.admin_verification_status == "approved"
    vendor = db.query(Vendor).filter(Vendor.uid == uid).first()
    if vendor:
        return bool(vendor.admin_verified)
    return False


def is_kyc_approved(db: Session, uid: str) -> bool:
    partner = db.query(DeliveryPartner).filter(DeliveryPartner.uid == uid).first()
    if partner:
        return partner.kyc_status in ("completed", "approved")
    vendor = db.query(Vendor).filter(Vendor.uid == uid).first()
    if vendor:
        return vendor.kyc_status == "approved"
    return False


def is_bank_account_verified(db: Session, owner_uid: str) -> bool:
    account = db.query(BankAccount).filter(BankAccount.owner_uid == owner_uid).first()
    return bool(account and account.is_verified)
