import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from phoneguard_shared import SmsBackend

from .auth import JwtTokenIssuer
from .auth_service import PhoneAuthService
from .blocking import BlockService
from .clock import Clock, SystemClock
from .config import settings
from .database import SessionFactory, SessionLocal, engine, session_scope
from .errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from .fraud import IP, SuspiciousActivityDetector
from .metrics import REQ_DURATION, REQUESTS
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .otp_ledger import OTPLedger
from .rate_limit import RateLimiter, RateLimitMiddleware, build_request_log, connect_redis
from .routers import admin as admin_router
from .routers import auth as auth_router
from .sms_provider import CodeDelivery, build_code_delivery
from .utils.security_headers import SecurityHeadersMiddleware

logger = logging.getLogger("phoneguard.app")

INITIATE_PATH = "/api/auth/phone/initiate"


def _sweep_once(app: FastAPI) -> None:
    removed = app.state.otp_ledger.sweep()
    pruned = app.state.rate_limiter.prune()
    if app.state.initiate_limiter is not None:
        pruned += app.state.initiate_limiter.prune()
    devices = app.state.detector.prune()
    if removed or pruned or devices:
        logger.debug("Sweep removed %d OTP records, %d request logs, %d device sightings", removed, pruned, devices)


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(_sweep_once, app)
        except Exception:
            logger.warning("Periodic sweep failed", exc_info=True)


def create_app(
    clock: Optional[Clock] = None,
    session_factory: SessionFactory = SessionLocal,
    sms_backend: Optional[SmsBackend] = None,
    redis_client=None,
) -> FastAPI:
    logging.getLogger("phoneguard").setLevel(settings.LOG_LEVEL)
    clock = clock or SystemClock()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if settings.OTP_SWEEP_INTERVAL_SECS > 0:
            task = asyncio.create_task(_sweep_loop(app, settings.OTP_SWEEP_INTERVAL_SECS))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="Phone Auth API", version="0.1.0", lifespan=lifespan)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    # Services
    backend = settings.RATE_LIMIT_BACKEND.lower()
    if backend == "redis" and redis_client is None:
        redis_client = connect_redis(settings.REDIS_URL, settings.REDIS_TIMEOUT_SECS)
    ledger = OTPLedger(
        clock=clock,
        ttl_secs=settings.OTP_TTL_SECS,
        max_attempts=settings.OTP_MAX_VERIFY_ATTEMPTS,
    )
    blocks = BlockService(
        session_factory,
        clock=clock,
        max_daily_attempts=settings.BLOCK_MAX_DAILY_ATTEMPTS,
        block_duration_secs=settings.BLOCK_DURATION_SECS,
        day_tz=settings.BLOCK_DAY_TZ,
    )
    detector = SuspiciousActivityDetector(
        session_factory,
        clock=clock,
        window_secs=settings.SUSPICIOUS_WINDOW_SECS,
        max_devices=settings.SUSPICIOUS_MAX_DEVICES,
    )
    rate_limiter = RateLimiter(
        build_request_log(
            backend,
            "global",
            window_secs=settings.RATE_LIMIT_WINDOW_SECS,
            session_factory=session_factory,
            redis_client=redis_client,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
        ),
        clock=clock,
        limit=settings.RATE_LIMIT_MAX_REQUESTS,
        window_secs=settings.RATE_LIMIT_WINDOW_SECS,
        name="global",
    )
    initiate_limiter = None
    if settings.INITIATE_LIMIT_PER_DAY > 0:
        initiate_limiter = RateLimiter(
            build_request_log(
                backend,
                "initiate",
                window_secs=24 * 60 * 60,
                session_factory=session_factory,
                redis_client=redis_client,
                prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            ),
            clock=clock,
            limit=settings.INITIATE_LIMIT_PER_DAY,
            window_secs=24 * 60 * 60,
            name="initiate",
        )
    delivery = CodeDelivery(sms_backend, settings.OTP_SMS_TEMPLATE) if sms_backend is not None else build_code_delivery()
    issuer = JwtTokenIssuer(settings.JWT_SECRET, settings.jwt_expires_delta, clock=clock)

    app.state.clock = clock
    app.state.otp_ledger = ledger
    app.state.block_service = blocks
    app.state.detector = detector
    app.state.rate_limiter = rate_limiter
    app.state.initiate_limiter = initiate_limiter
    app.state.auth_service = PhoneAuthService(
        ledger,
        blocks,
        detector,
        delivery,
        issuer,
        session_factory=session_factory,
        clock=clock,
        dev_echo=settings.OTP_DEV_ECHO,
        expose_errors=settings.DEV_MODE,
    )

    def _log_denial(ip: str, reason: str) -> None:
        detector.log_failed_attempt(ip, IP, reason)

    # Middleware: the last one added runs first. The global limiter must see
    # a request before the initiate limiter spends a daily slot on it.
    if initiate_limiter is not None:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=initiate_limiter,
            paths=[INITIATE_PATH],
            trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
            on_denied=_log_denial,
        )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=rate_limiter,
        trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
        on_denied=_log_denial,
    )

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    app.add_middleware(SecurityHeadersMiddleware, hsts=not settings.DEV_MODE)
    app.add_middleware(RequestIDMiddleware)
    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/")
    def root():
        return {"name": "phone-auth", "version": app.version, "env": settings.ENV}

    @app.get("/health")
    def health():
        with session_scope(session_factory) as db:
            db.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router.router)
    if settings.admin_enabled:
        app.include_router(admin_router.router)
    else:
        logger.info("Admin routes disabled: no ADMIN_TOKEN configured")

    return app


app = create_app()
