# src/pisogate/main.py
"""Main entry point for the pisogate application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from pisogate.api.v1 import admin_router, portal_router, system_router
from pisogate.core.settings import settings
from pisogate.db.session import SessionLocal, create_tables
from pisogate.services.credits import CoinSlotBusyError
from pisogate.services.guard import RateLimitExceeded, SecurityViolation
from pisogate.services.ledger import InvalidCreditError, SessionNotFoundError
from pisogate.services.rates import RateConflictError, RateNotFoundError
from pisogate.services.runtime import Runtime

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

NOT_AUTHORIZED = {"detail": "Not authorized"}

# Initialize FastAPI app
app = FastAPI(
    title="pisogate API",
    description="Coin-operated WiFi hotspot gateway",
    version=settings.app_version,
)

# Include API routers
app.include_router(portal_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.exception_handler(RateLimitExceeded)
async def rate_limited_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.reason)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Too many requests", "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(SecurityViolation)
async def security_violation_handler(request: Request, exc: SecurityViolation) -> JSONResponse:
    # The reason stays in the logs; the device only learns it was refused.
    logger.warning("Rejected %s %s: %s (%s)", request.method, request.url.path, exc.reason, exc)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=NOT_AUTHORIZED)


@app.exception_handler(CoinSlotBusyError)
async def coin_slot_busy_handler(request: Request, exc: CoinSlotBusyError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Coin slot in use", "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(SessionNotFoundError)
@app.exception_handler(RateNotFoundError)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(RateConflictError)
async def conflict_handler(request: Request, exc: RateConflictError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(InvalidCreditError)
async def invalid_credit_handler(request: Request, exc: InvalidCreditError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


@app.on_event("startup")
async def on_startup() -> None:
    create_tables()
    runtime = Runtime.build(settings, SessionLocal)
    await runtime.start()
    app.state.runtime = runtime


@app.on_event("shutdown")
async def on_shutdown() -> None:
    runtime: Runtime | None = getattr(app.state, "runtime", None)
    if runtime:
        await runtime.stop()
        app.state.runtime = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "pisogate API",
        "version": settings.app_version,
        "description": "Coin-operated WiFi hotspot gateway",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("pisogate.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
