"""
Payment-gateway collaborator.

Checkout never assumes an online charge went through: every gateway call
returns a PaymentResult and the cart is only cleared on SUCCEEDED.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.config import logger, APP_NAME, CURRENCY, PAYMENT_API_BASE, PAYMENT_API_KEY, PAYMENT_TIMEOUT_SEC


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class PaymentResult:
    outcome: PaymentOutcome
    reference: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def succeeded(cls, reference: Optional[str] = None) -> "PaymentResult":
        return cls(PaymentOutcome.SUCCEEDED, reference=reference)

    @classmethod
    def failed(cls, reason: str, reference: Optional[str] = None) -> "PaymentResult":
        return cls(PaymentOutcome.FAILED, reference=reference, reason=reason)

    @classmethod
    def pending(cls, reason: Optional[str] = None, reference: Optional[str] = None) -> "PaymentResult":
        return cls(PaymentOutcome.PENDING, reference=reference, reason=reason)


class PaymentGateway:
    def charge(self, order_group_id: str, amount_cents: int) -> PaymentResult:
        raise NotImplementedError


class ComingSoonGateway(PaymentGateway):
    """Online payments are not live yet: every charge stays pending."""

    def charge(self, order_group_id: str, amount_cents: int) -> PaymentResult:
        logger.info(f"[payments] online payment not available yet group={order_group_id}")
        return PaymentResult.pending(reason="Online payment coming soon")


def build_headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {PAYMENT_API_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": f"{APP_NAME}Backend/1.0",
    }


def parse_payment_response(data: Dict[str, Any]) -> PaymentResult:
    if not isinstance(data, dict):
        return PaymentResult.pending(reason="unreadable gateway response")
    obj = data.get("data") if isinstance(data.get("data"), dict) else data
    status = str(obj.get("status") or "").lower()
    reference = obj.get("payment_id") or obj.get("id")
    if status in ("captured", "paid", "succeeded", "success"):
        return PaymentResult.succeeded(reference=reference)
    if status in ("failed", "declined", "cancelled"):
        return PaymentResult.failed(reason=str(obj.get("error") or obj.get("reason") or status), reference=reference)
    return PaymentResult.pending(reason=status or None, reference=reference)


class HttpPaymentGateway(PaymentGateway):
    def __init__(self, api_base: str = PAYMENT_API_BASE, timeout: float = PAYMENT_TIMEOUT_SEC):
        self.api_base = (api_base or "").rstrip("/")
        self.timeout = timeout

    def charge(self, order_group_id: str, amount_cents: int) -> PaymentResult:
        payload = {
            "amount": int(amount_cents),
            "currency": CURRENCY,
            "receipt": order_group_id,
            "notes": {"order_group_id": order_group_id},
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.api_base}/v1/payments", json=payload, headers=build_headers())
        except httpx.HTTPError as ex:
            # Outcome unknown: the caller must re-query, never blindly re-charge
            logger.warning(f"[payments] transport error group={order_group_id}: {ex}")
            return PaymentResult.pending(reason="gateway unreachable")
        if resp.status_code >= 500:
            logger.warning(f"[payments] gateway {resp.status_code} group={order_group_id}")
            return PaymentResult.pending(reason=f"gateway status {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            msg = data.get("error") if isinstance(data, dict) else None
            return PaymentResult.failed(reason=str(msg or f"gateway status {resp.status_code}"))
        return parse_payment_response(data)


def default_gateway() -> PaymentGateway:
    if PAYMENT_API_BASE and PAYMENT_API_KEY:
        return HttpPaymentGateway()
    return ComingSoonGateway()
