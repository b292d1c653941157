"""
Pricing helpers shared by the cart, checkout and settlement code.
All amounts are integer minor units (paise); rates are plain fractions (0.05 = 5%).
"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol

from core.config import DELIVERY_BASE_FEE_CENTS, DELIVERY_BASE_KM, DELIVERY_PER_KM_CENTS

EARTH_RADIUS_KM = 6371.0


class PricedLine(Protocol):
    unit_price_cents: int
    discount_price_cents: Optional[int]
    quantity: int


def round_cents(value) -> int:
    """Round a Decimal/float amount to a whole cent, half away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_unit_price(unit_price_cents: int, discount_price_cents: Optional[int]) -> int:
    if discount_price_cents is not None:
        return int(discount_price_cents)
    return int(unit_price_cents)


def line_total(line: PricedLine) -> int:
    return effective_unit_price(line.unit_price_cents, line.discount_price_cents) * int(line.quantity)


def vendor_subtotal(lines: Iterable[PricedLine]) -> int:
    return sum(line_total(line) for line in lines)


def compute_tax(subtotal_cents: int, tax_rate: float) -> int:
    if not tax_rate:
        return 0
    return round_cents(Decimal(subtotal_cents) * Decimal(str(tax_rate)))


def distance_fee(distance_km: float) -> int:
    """Base fee covers the first DELIVERY_BASE_KM; every started km beyond adds DELIVERY_PER_KM_CENTS."""
    extra_km = max(0.0, float(distance_km) - DELIVERY_BASE_KM)
    return DELIVERY_BASE_FEE_CENTS + math.ceil(round(extra_km, 6)) * DELIVERY_PER_KM_CENTS


def coupon_discount(subtotal_cents: int, discount_type: str, discount_value: float,
                    max_discount_cents: Optional[int] = None) -> int:
    """Flat or percent discount, never more than the cap or the subtotal itself."""
    if discount_type == "percent":
        amount = round_cents(Decimal(subtotal_cents) * Decimal(str(discount_value)) / Decimal(100))
    else:
        amount = round_cents(discount_value)
    if max_discount_cents:
        amount = min(amount, int(max_discount_cents))
    return max(0, min(amount, subtotal_cents))


def platform_commission(amount_cents: int, rate: float) -> int:
    return round_cents(Decimal(amount_cents) * Decimal(str(rate)))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
