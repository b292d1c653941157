from typing import Optional

import firebase_admin
from fastapi import Request
from firebase_admin import auth as fb_auth, credentials as fb_credentials

from core.config import logger, FIREBASE_CREDENTIALS_PATH, FIREBASE_PROJECT_ID


def init_firebase() -> bool:
    """Initialize the default Firebase app once. Returns whether tokens can be verified."""
    if firebase_admin._apps:
        return True
    options = {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None
    try:
        cred = fb_credentials.Certificate(FIREBASE_CREDENTIALS_PATH) if FIREBASE_CREDENTIALS_PATH else None
        firebase_admin.initialize_app(cred, options)
    except (ValueError, OSError) as ex:
        logger.warning(f"Firebase Admin not initialized: {ex}")
        return False
    logger.info("Firebase Admin initialized")
    return True


firebase_enabled = init_firebase()


def get_uid_from_request(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        return None
    if not firebase_enabled:
        return None
    try:
        decoded = fb_auth.verify_id_token(token)
        return decoded.get("uid")
    except Exception as ex:
        logger.warning(f"Token verification failed: {ex}")
        return None


def current_uid(request: Request) -> Optional[str]:
    """FastAPI dependency: uid of the signed-in customer, vendor or courier (None when anonymous)."""
    return get_uid_from_request(request)


ROLE_COURIER = "courier"
ROLE_VENDOR = "vendor"
ROLE_CUSTOMER = "customer"


def resolve_role(db, uid: Optional[str]) -> Optional[str]:
    """Profile table the uid belongs to, checked courier first."""
    if not uid:
        return None
    from models.customers import Customer
    from models.partners import DeliveryPartner, Vendor

    if db.query(DeliveryPartner.uid).filter(DeliveryPartner.uid == uid).first():
        return ROLE_COURIER
    if db.query(Vendor.uid).filter(Vendor.uid == uid).first():
        return ROLE_VENDOR
    if db.query(Customer.uid).filter(Customer.uid == uid).first():
        return ROLE_CUSTOMER
    return None
