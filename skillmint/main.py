from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi_pagination import add_pagination
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

# --- ADMIN ROUTES ---
from skillmint.api.v1.admin import commissions as admin_commissions
from skillmint.api.v1.admin import policy as admin_policy
from skillmint.api.v1.admin import wallets as admin_wallets
from skillmint.api.v1.admin import withdraw as admin_withdraw

# ===== IMPORT ROUTERS =====
from skillmint.api.v1.shares import orders, wallets, webhooks, withdraw

# --- USER ROUTES ---
from skillmint.api.v1.user import affiliate
from skillmint.core.errors import AppError
from skillmint.core.leases import LeaseManager
from skillmint.core.policy import PolicyService
from skillmint.core.scheduler import scheduler, start_scheduler
from skillmint.core.settings import settings
from skillmint.db.session import AsyncSessionLocal
from skillmint.libs.response import error_response

# --- MIDDLEWARE ---
from skillmint.middleware.rate_limit import RateLimitMiddleware
from skillmint.middleware.request_context import RequestContextMiddleware
from skillmint.middleware.request_deadline import RequestDeadlineMiddleware
from skillmint.services.shares.ledger import get_system_accounts
from skillmint.services.shares.mailer import MailerService


@asynccontextmanager
async def lifespan(app: FastAPI):

    for key in settings.missing_required():
        logger.warning(f"⚠ Missing required setting: {key}")

    # ================================
    # 1) GLOBAL HTTP CLIENT
    # ================================
    app.state.http = httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    logger.info("🌐 HTTP client started")

    # ================================
    # 2) LEASES, POLICY, MAILER, SYSTEM ACCOUNTS
    # ================================
    app.state.leases = LeaseManager()
    app.state.policy = PolicyService()
    app.state.mailer = MailerService()
    async with AsyncSessionLocal() as session:
        await app.state.policy.reload(session)
        await get_system_accounts(session)
        await session.commit()

    # ================================
    # 3) START APSCHEDULER
    # ================================
    if settings.SCHEDULER_ENABLED:
        start_scheduler(app.state.http, app.state.leases, app.state.policy, app.state.mailer)
        logger.info("⏱ Scheduler started")

    try:
        yield
    finally:
        # ================================
        # 4) STOP SCHEDULER
        # ================================
        if scheduler.running:
            try:
                scheduler.shutdown(wait=False)
                logger.info("🛑 Scheduler stopped")
            except Exception as e:
                logger.warning(f"⚠ Scheduler shutdown error: {e}")

        # ================================
        # 5) DRAIN LEASES AND MAIL, CLOSE HTTP CLIENT
        # ================================
        await app.state.leases.drain()
        await app.state.mailer.drain()
        await app.state.http.aclose()
        logger.info("🌐 HTTP client closed")


# ===== APP CONFIG =====
app = FastAPI(
    title="SkillMint Monetary Core",
    description="Ledger, payments, commissions and withdrawals for the SkillMint marketplace",
    version="0.1.0",
    lifespan=lifespan,
)


# ===== ERROR ENVELOPE =====
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} → {exc.status_code} {exc.message}")
    return error_response(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(400, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return error_response(exc.status_code, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}: {type(exc).__name__}")
    return error_response(500, "Internal error")


# --- CORS ---
origins = [o for o in (settings.FRONTEND_URL, "http://localhost:3000", "http://127.0.0.1:3000") if o]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestDeadlineMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=settings.RATE_LIMIT_PER_MINUTE,
    trusted_proxies=settings.TRUSTED_PROXIES,
)
add_pagination(app)
prefix = "/api/v1"

# ===== REGISTER ROUTERS =====

# --- Share ---
app.include_router(orders.router, prefix=prefix)
app.include_router(webhooks.router, prefix=prefix)
app.include_router(wallets.router, prefix=prefix)
app.include_router(withdraw.router, prefix=prefix)

# --- USER ROUTES ---
app.include_router(affiliate.router, prefix=prefix)

# --- ADMIN ROUTES ---
app.include_router(admin_withdraw.router, prefix=prefix)
app.include_router(admin_commissions.router, prefix=prefix)
app.include_router(admin_wallets.router, prefix=prefix)
app.include_router(admin_policy.router, prefix=prefix)


# ===== ROOT =====
@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("skillmint.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
