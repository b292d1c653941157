import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


APP_NAME = os.getenv("APP_NAME", "QuickBasket")
CURRENCY = os.getenv("CURRENCY", "INR").strip().upper()

# Pricing (all amounts in minor units, paise for INR)
TAX_RATE = _env_float("TAX_RATE", 0.0)
FALLBACK_DELIVERY_FEE_CENTS = _env_int("FALLBACK_DELIVERY_FEE_CENTS", 3000)
FALLBACK_DISTANCE_KM = _env_float("FALLBACK_DISTANCE_KM", 5.0)
DELIVERY_BASE_FEE_CENTS = _env_int("DELIVERY_BASE_FEE_CENTS", 2000)
DELIVERY_BASE_KM = _env_float("DELIVERY_BASE_KM", 2.0)
DELIVERY_PER_KM_CENTS = _env_int("DELIVERY_PER_KM_CENTS", 500)
FREE_DELIVERY_MIN_CENTS = _env_int("FREE_DELIVERY_MIN_CENTS", 49900)  # 0 disables

# Settlement
PLATFORM_COMMISSION_RATE = _env_float("PLATFORM_COMMISSION_RATE", 0.005)
CASHOUT_MIN_CENTS = _env_int("CASHOUT_MIN_CENTS", 100000)
CASHOUT_REQUESTS_PER_HOUR = _env_int("CASHOUT_REQUESTS_PER_HOUR", 5)

# Delivery OTP
OTP_LENGTH = _env_int("OTP_LENGTH", 4)
OTP_MAX_ATTEMPTS = _env_int("OTP_MAX_ATTEMPTS", 5)
OTP_ATTEMPT_WINDOW_MIN = _env_int("OTP_ATTEMPT_WINDOW_MIN", 10)

# Payments (online methods are "coming soon" until the gateway is switched on)
ONLINE_PAYMENTS_ENABLED = _env_bool("ONLINE_PAYMENTS_ENABLED", False)
PAYMENT_API_BASE = (os.getenv("PAYMENT_API_BASE", "") or "").strip().rstrip("/")
PAYMENT_API_KEY = (os.getenv("PAYMENT_API_KEY", "") or "").strip()
PAYMENT_TIMEOUT_SEC = _env_float("PAYMENT_TIMEOUT_SEC", 15.0)

# Admin (ADMIN_SECRET itself is read per request by routers/admin.py)
ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Firebase Admin: service-account file, or application default credentials when unset
FIREBASE_PROJECT_ID = (os.getenv("FIREBASE_PROJECT_ID", "") or "").strip()
FIREBASE_CREDENTIALS_PATH = (os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH", "") or "").strip().strip('"').strip("'")

# CORS: customer, vendor and courier apps (Expo web dev server on 8081 and 19006)
CORS_ORIGINS = [o.strip() for o in (os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or
                                     "http://localhost:8081,http://localhost:19006,http://127.0.0.1:8081").split(",") if o.strip()]
_cors_regex = (os.getenv("ALLOWED_ORIGINS_REGEX") or "").strip()
# Never accept a pattern matching every origin
CORS_ORIGIN_REGEX = _cors_regex if _cors_regex not in ("", ".*", "^.*$", ".+") else None

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("quickbasket")
