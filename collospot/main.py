from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from collospot.api.v1.routes import router as api_router
from collospot.core.config import get_settings, parse_cors_origins
import logging
import time
from urllib.parse import urlparse
from collospot.core.database import Base, engine, SessionLocal
from collospot.core.exceptions import CollospotError, GatewayError
from collospot.core.logging import configure_logging
from collospot.middlewares.rate_limit import limiter
from collospot.services.container import build_services


settings = get_settings()

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
_started_at = time.time()


@app.exception_handler(CollospotError)
async def collospot_error_handler(request, exc: CollospotError):
    if isinstance(exc, GatewayError):
        # Provider bodies stay in the logs.
        logger.warning("Gateway error on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(SQLAlchemyTimeoutError)
async def sqlalchemy_timeout_handler(request, exc):
    logger.warning("Database pool timeout on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service is busy. Please retry in a moment."},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


configured_origins = parse_cors_origins(settings.cors_origins or "")
def _origin_from_url(raw: str) -> str | None:
    text = str(raw or "").strip()
    if not text:
        return None
    parsed = urlparse(text)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return None


frontend_origin = _origin_from_url(settings.frontend_base_url)
allow_origins = list(dict.fromkeys(configured_origins + ([frontend_origin] if frontend_origin else [])))

logger.info("CORS allow_origins=%s", allow_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.on_event("startup")
def start_services():
    if settings.auto_create_tables:
        # Optional local fallback for fresh environments.
        try:
            Base.metadata.create_all(bind=engine)
        except Exception as exc:
            logger.warning("DB unavailable on startup, skipping table creation: %s", exc)

    services = build_services(settings, SessionLocal)
    app.state.services = services
    if settings.sweeper_enabled:
        services.sweeper.start()


@app.on_event("shutdown")
def stop_services():
    services = getattr(app.state, "services", None)
    if services is None:
        return
    services.sweeper.stop()
    services.notifier.shutdown(wait=False)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    # Liveness: process is up.
    return {
        "status": "ok",
        "uptime_seconds": int(max(0, time.time() - _started_at)),
        "service": settings.app_name,
    }


@app.get("/readyz")
def readyz():
    # Readiness: database is reachable.
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "ready",
            "uptime_seconds": int(max(0, time.time() - _started_at)),
        }
    except Exception as exc:
        logger.warning("Readiness DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "detail": "database_unavailable"},
        )
    finally:
        db.close()
