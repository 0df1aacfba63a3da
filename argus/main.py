"""
Argus Escrow — FastAPI Application
Configures CORS, security headers and rate limiting, initialises the database,
the payout backend and the payout worker on startup.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from argus.config import get_settings
from argus.database import Base, async_session, engine
from argus.exceptions import ArgusError
from argus.jobs.scheduler import PayoutScheduler
from argus.middleware.error_handler import argus_exception_handler
from argus.middleware.rate_limit import limiter
from argus.middleware.security import SecurityHeadersMiddleware
from argus.routers.escrow import router as escrow_router
from argus.services.payout_worker import PayoutWorker
from argus.services.price_oracle import FixedPriceOracle
from argus.services.zcash import get_payout_backend

# Ensure models are imported so Base.metadata knows about them
import argus.models  # noqa: F401

settings = get_settings()
logger = logging.getLogger("argus")


# ═══════════════════════════════════════════════════════
#  LIFESPAN — startup / shutdown
# ═══════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire the payout services, optionally start the scheduler."""
    logger.info("🚀 Starting Argus Escrow…")

    # Create all tables (safe if they already exist)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables created / verified.")

    from argus.audit import register_audit_listeners
    register_audit_listeners()

    backend = get_payout_backend(settings)
    worker = PayoutWorker(async_session, backend, settings)
    app.state.payout_backend = backend
    app.state.payout_worker = worker
    app.state.price_oracle = FixedPriceOracle(settings=settings)

    scheduler = None
    if settings.ENABLE_PAYOUT_SCHEDULER:
        scheduler = PayoutScheduler(worker, settings)
        scheduler.start()
    else:
        logger.info("Payout scheduler disabled; use POST /api/escrow/admin/process")

    yield  # ← app runs here

    # Shutdown
    if scheduler is not None:
        scheduler.shutdown()
    await backend.aclose()
    await engine.dispose()
    logger.info("👋 Argus Escrow shut down.")


# ═══════════════════════════════════════════════════════
#  APP FACTORY
# ═══════════════════════════════════════════════════════

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Private escrow and time-scattered shielded payouts for anonymous sources",
    lifespan=lifespan,
)


# ── CORS ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Internal-Key"],
)

# ── Security Headers ──
app.add_middleware(SecurityHeadersMiddleware)

# ── Rate Limiter ──
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── Domain errors ──
app.add_exception_handler(ArgusError, argus_exception_handler)

# ── Routers ──
app.include_router(escrow_router)


# ═══════════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════════

@app.get("/api/health")
async def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


# ═══════════════════════════════════════════════════════
#  RUN (for direct execution)
# ═══════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "argus.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info",
    )
