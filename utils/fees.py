"""
Delivery fee estimation per vendor leg.

Distance is the great-circle distance between the vendor's store and the
customer's address. When either side has no coordinates (or the lookup
fails) the fixed fallback is used so checkout never stalls; those estimates
are flagged so the order can be reconciled later.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from core.config import logger, FALLBACK_DELIVERY_FEE_CENTS, FALLBACK_DISTANCE_KM
from models.customers import CustomerAddress
from models.partners import Vendor
from utils.pricing import distance_fee, haversine_km


@dataclass(frozen=True)
class FeeEstimate:
    fee_cents: int
    distance_km: float
    used_fallback: bool = False


FALLBACK_ESTIMATE = FeeEstimate(fee_cents=FALLBACK_DELIVERY_FEE_CENTS, distance_km=FALLBACK_DISTANCE_KM, used_fallback=True)


def estimate_from_coordinates(vendor_lat: Optional[float], vendor_lng: Optional[float],
                              addr_lat: Optional[float], addr_lng: Optional[float]) -> Optional[FeeEstimate]:
    if None in (vendor_lat, vendor_lng, addr_lat, addr_lng):
        return None
    distance = round(haversine_km(vendor_lat, vendor_lng, addr_lat, addr_lng), 2)
    return FeeEstimate(fee_cents=distance_fee(distance), distance_km=distance)


def estimate_delivery_fee(db: Session, vendor_uid: str, address: CustomerAddress) -> FeeEstimate:
    try:
        vendor = db.query(Vendor).filter(Vendor.uid == vendor_uid).first()
        if vendor:
            est = estimate_from_coordinates(vendor.latitude, vendor.longitude, address.latitude, address.longitude)
            if est:
                return est
        logger.warning(f"[fees] no coordinates for vendor={vendor_uid} address={address.id}; using fallback fee")
    except Exception as ex:
        logger.warning(f"[fees] estimate failed vendor={vendor_uid}: {ex}; using fallback fee")
    return FALLBACK_ESTIMATE


def build_fee_lookup(db: Session, vendor_uids: Iterable[str], address: CustomerAddress) -> Dict[str, FeeEstimate]:
    """vendor_uid -> FeeEstimate for every vendor present in the cart."""
    return {uid: estimate_delivery_fee(db, uid, address) for uid in sorted(set(vendor_uids)) if uid}
