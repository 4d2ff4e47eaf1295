"""
Credit Ledger API - FastAPI Backend
Main application entry point: webhooks, generation requests, billing and health.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import auth, billing, generate, health, webhooks
from services.compute_provider import ReplicateProvider
from services.errors import LedgerError, MalformedRequest, RateLimited
from services.identity import ClerkIdentityProvider, ClerkSessionVerifier, lazy_provisioning_enabled
from services.rate_limiter import RateLimiter
from services.reconciliation import run_maintenance, sweep_stale_generations


async def _periodic_ledger_maintenance() -> None:
    interval_minutes = max(int(settings.REFUND_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                result = await run_maintenance(db)
            refunded = int(result.get("refunded", 0) or 0)
            pruned = int(result.get("pruned_webhook_events", 0) or 0)
            if refunded or pruned:
                print(f"🧾 Ledger maintenance tick: refunded={refunded} pruned_webhook_events={pruned}")
        except Exception as exc:
            print(f"⚠️ Ledger maintenance tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as db:
            swept = await sweep_stale_generations(db)
        if swept.get("refunded"):
            print(f"♻️ Refunded {swept['refunded']} stalled generations after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation refund sweep skipped: {exc}")

    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = RateLimiter()
    if getattr(app.state, "compute_provider", None) is None:
        app.state.compute_provider = ReplicateProvider()
    if getattr(app.state, "session_verifier", None) is None:
        app.state.session_verifier = ClerkSessionVerifier()
    if getattr(app.state, "identity_provider", None) is None and lazy_provisioning_enabled():
        app.state.identity_provider = ClerkIdentityProvider()
        print("🪪 Lazy identity provisioning enabled (non-production only).")

    maintenance_task = None
    if int(settings.REFUND_SWEEP_INTERVAL_MINUTES) > 0:
        maintenance_task = asyncio.create_task(_periodic_ledger_maintenance())
        print(
            "📅 Ledger maintenance loop enabled "
            f"(every {int(settings.REFUND_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if maintenance_task is not None:
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass
    limiter = getattr(app.state, "rate_limiter", None)
    if limiter is not None:
        await limiter.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Prepaid credit ledger with payment and identity webhooks",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {}
    if isinstance(exc, RateLimited) and exc.reset_at:
        headers["X-RateLimit-Remaining"] = str(exc.remaining)
        headers["X-RateLimit-Reset"] = str(int(exc.reset_at))
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = MalformedRequest(
        "Invalid request",
        context={
            "errors": [
                {"loc": [str(part) for part in item.get("loc", ())], "msg": item.get("msg"), "type": item.get("type")}
                for item in exc.errors()
            ]
        },
    )
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(generate.router, prefix="/generate", tags=["Generate"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
