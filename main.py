from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from core.config import logger, APP_NAME, CORS_ORIGINS, CORS_ORIGIN_REGEX  # type: ignore
from core.errors import MarketplaceError

# Routers
from routers import admin, cart, delivery, orders, vendor, wallets  # type: ignore

app = FastAPI(title=f"{APP_NAME} API")

# ---- CORS setup ----
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Security headers ---
@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Permissions-Policy", "microphone=(), camera=()")
    return response


# --- Domain errors ---
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error(f"[api] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"[api] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---- Include routers ----
app.include_router(cart.router)
app.include_router(orders.router)
# courier endpoints (accept, pickup legs, OTP handover)
app.include_router(delivery.router)
# store endpoints (accept, ready for pickup, reject)
app.include_router(vendor.router)
app.include_router(wallets.router)
# admin endpoints
app.include_router(admin.router)


@app.on_event("startup")
async def _init_postgres_schema():
    try:
        from core.database import init_db
        init_db()
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")


@app.get("/")
async def root():
    return {"ok": True}

