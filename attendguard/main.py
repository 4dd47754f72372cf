"""FastAPI application for attendance integrity verification."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from attendguard.audit.routes import router as audit_router
from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.auth import ADMIN, authenticate_user, create_access_token
from attendguard.checkins.routes import router as checkins_router
from attendguard.checkins.rules import TOKEN_REJECTED_MESSAGE
from attendguard.db import get_db, init_db
from attendguard.devices.routes import router as devices_router
from attendguard.errors import (
    DomainError,
    RateLimited,
    SigningKeyMisconfigured,
    TokenInvalid,
)
from attendguard.maintenance import sweep_forever
from attendguard.metrics import router as metrics_router
from attendguard.review.routes import router as review_router
from attendguard.schemas import CheckInResponse, Flag, LoginRequest, LoginResponse, Verdict
from attendguard.sessions.routes import router as sessions_router
from attendguard.settings import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not settings.SIGNING_SECRET:
        logger.error("SIGNING_SECRET is not set; check-in tokens cannot be issued or verified")

    sweeper = None
    if settings.sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(sweep_forever(settings.sweep_interval_seconds))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper


app = FastAPI(
    title="Attendance Integrity Service",
    description="Rotating QR tokens, geofence, device binding and review for class attendance",
    version="1.0.0",
    lifespan=lifespan,
)

# Observability
app.include_router(metrics_router)  # exposes GET /metrics

# Functional routers
app.include_router(sessions_router)
app.include_router(checkins_router)
app.include_router(review_router)
app.include_router(audit_router)
app.include_router(devices_router)


# --------------------
# Error mapping
# --------------------
@app.exception_handler(TokenInvalid)
async def token_invalid_handler(request: Request, exc: TokenInvalid):
    body = CheckInResponse(
        verdict=Verdict.rejected,
        flags=[Flag.token_invalid.value],
        message=exc.message or TOKEN_REJECTED_MESSAGE,
        retry_after=0,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={**body.model_dump(mode="json", by_alias=True, exclude_none=True), "reason": exc.reason},
    )


@app.exception_handler(RateLimited)
async def rate_limited_handler(request: Request, exc: RateLimited):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "retryAfter": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(SigningKeyMisconfigured)
async def signing_key_handler(request: Request, exc: SigningKeyMisconfigured):
    logger.error("signing key misconfigured while serving %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# --------------------
# Auth
# --------------------
@app.post("/auth/login", response_model=LoginResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """Authenticate the administrator and return a JWT token."""
    audit = AuditService(db)
    if not authenticate_user(request.username, request.password):
        audit.record(
            AuditEventType.login_failed,
            subject_id=request.username,
            metadata={"reason": "bad-credentials"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    audit.record(AuditEventType.login_succeeded, subject_id=request.username)
    access_token = create_access_token(data={"sub": request.username, "role": ADMIN})
    return LoginResponse(access_token=access_token, token_type="bearer")


# --------------------
# Root
# --------------------
@app.get("/")
async def root():
    return {"message": "Attendance integrity service", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
