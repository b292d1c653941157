"""Throttles for delivery OTP attempts and cashout requests (throttled-py)."""
import os
import logging
from datetime import timedelta
from typing import Tuple

from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import OTP_MAX_ATTEMPTS, OTP_ATTEMPT_WINDOW_MIN, CASHOUT_REQUESTS_PER_HOUR

logger = logging.getLogger("quickbasket")


def _build_store():
    """Redis when REDIS_URL is set (shared across workers), process memory otherwise."""
    redis_url = os.getenv("REDIS_URL", "").strip()
    if not redis_url:
        logger.warning("[rate_limit] REDIS_URL not set, counters are per process")
        return store.MemoryStore()
    try:
        backend = store.RedisStore(server=redis_url)
        logger.info("[rate_limit] counters kept in Redis")
        return backend
    except Exception as ex:
        logger.warning(f"[rate_limit] Redis unavailable, falling back to memory: {ex}")
        return store.MemoryStore()


storage = _build_store()

# A 4-digit code must not be guessable by hammering the endpoint
otp_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=OTP_ATTEMPT_WINDOW_MIN), limit=OTP_MAX_ATTEMPTS),
    store=storage,
)

cashout_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(hours=1), limit=CASHOUT_REQUESTS_PER_HOUR),
    store=storage,
)


def _consume(throttle: Throttled, key: str, message: str) -> Tuple[bool, str]:
    try:
        if throttle.limit(key, cost=1).limited:
            return False, message
        return True, ""
    except Exception as ex:
        # Fail open: the OTP and the balance checks still gate the action
        logger.warning(f"[rate_limit] check failed for {key}: {ex}")
        return True, ""


def check_otp_rate_limit(order_id: str) -> Tuple[bool, str]:
    """
    Count one OTP attempt against the order.

    Returns:
        (allowed, message) where message is empty when allowed
    """
    return _consume(
        otp_throttle, f"otp:{order_id}",
        f"Too many OTP attempts. Please wait {OTP_ATTEMPT_WINDOW_MIN} minutes and ask the customer for the code again.",
    )


def check_cashout_rate_limit(uid: str) -> Tuple[bool, str]:
    return _consume(cashout_throttle, f"cashout:{uid}", "Cashout request limit reached. Please try again later.")
