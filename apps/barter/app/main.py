import asyncio
import logging
import time

from fastapi import FastAPI, HTTPException, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from barterwave_shared import SlidingWindowLimiter, RedisRateLimiter
from .config import settings
from .database import engine, session_scope
from .errors import app_error_handler, http_exception_handler, AppError
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import admin as admin_router
from .routers import auth as auth_router
from .routers import brand_settings as brand_settings_router
from .routers import listings as listings_router
from .routers import notifications as notifications_router
from .routers import offers as offers_router
from .service import sweep_timers_once


logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("barter")

REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


async def validation_error_handler(request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors()), "code": "validation_error"})


def _sweep_once() -> dict:
    with session_scope() as db:
        return sweep_timers_once(db)


def create_app() -> FastAPI:
    app = FastAPI(title="BarterWave API", version="0.1.0", docs_url="/docs")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON request log
    app.add_middleware(RequestIDMiddleware)

    # Rate limiting
    common_excludes = ["/health", "/metrics", "/docs", "/openapi.json"]
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            exclude_paths=common_excludes,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
            exclude_paths=common_excludes,
        )

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        # templated route keeps label cardinality bounded
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router.router)
    app.include_router(listings_router.router)
    app.include_router(offers_router.router)
    app.include_router(brand_settings_router.router)
    app.include_router(notifications_router.router)
    app.include_router(admin_router.router)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Timer sweep: persists expirations/escalations and sends deadline warnings
    poll = settings.TIMER_SWEEP_INTERVAL_SECS
    if poll > 0:
        @app.on_event("startup")
        async def _start_timer_sweeper():
            async def _loop():
                while True:
                    try:
                        await asyncio.to_thread(_sweep_once)
                    except Exception:
                        log.exception("timer sweep failed")
                    await asyncio.sleep(poll)
            asyncio.create_task(_loop())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)
