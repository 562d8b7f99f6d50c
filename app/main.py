"""
Account & subscription backend API.
Clerk identities, Stripe billing, and the admin console reconciled into one account store.
"""
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import os
import sys
import time
from pathlib import Path

from alembic import command
from alembic.config import Config

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)

EPHEMERAL_SWEEP_INTERVAL_SECONDS = int(os.getenv("EPHEMERAL_SWEEP_INTERVAL_SECONDS", "300"))
RUN_MIGRATIONS_ON_STARTUP = os.getenv("RUN_MIGRATIONS_ON_STARTUP", "true").lower() in ("1", "true", "yes")


def run_migrations() -> None:
    """Run Alembic migrations on startup. Uses alembic.ini and DATABASE_URL.
    Fails startup if migrations fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        logger.warning("DATABASE_URL is not set, skipping Alembic migrations (local sqlite uses create_all)")
        return
    if db_url.startswith("postgres://"):
        db_url = "postgresql://" + db_url[10:]
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("sqlalchemy.url", db_url)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise  # Fail startup so DB is not left out of sync


from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import admin, billing, password, upload as upload_router, users, webhooks
from app.db.base import Base
from app.db.session import engine
from app.dependencies import stores
# Import all models to ensure they're registered with Base
from app.models import User, Admin, Upload  # noqa: F401
from app.services import storage

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

app = FastAPI(title="Account & Subscription API")

_sweeper_task = None


async def _sweep_ephemeral_stores(interval: int) -> None:
    """Purge expired verification codes and rate-limit windows until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            codes = stores.verification_codes.sweep()
            windows = stores.rate_limiter.sweep()
            if codes or windows:
                logger.info("[sweeper] purged %s codes, %s rate-limit windows", codes, windows)
        except Exception:
            logger.exception("[sweeper] sweep failed")


@app.on_event("startup")
async def startup_event():
    """Create tables, run Alembic migrations, start the ephemeral-store sweeper."""
    global _sweeper_task

    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error("Error creating tables: %s", e)
        raise

    if RUN_MIGRATIONS_ON_STARTUP:
        run_migrations()

    _sweeper_task = asyncio.create_task(_sweep_ephemeral_stores(EPHEMERAL_SWEEP_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def shutdown_event():
    global _sweeper_task
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        _sweeper_task = None


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # api_error details are already {"error", "code"}; plain string details get wrapped
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


cors_origins = [APP_URL] + [
    origin.strip().rstrip("/") for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": int(time.time() * 1000)}


# Register routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(billing.router, prefix="/api/billing", tags=["Billing"])
app.include_router(password.router, prefix="/api/password", tags=["Password"])
app.include_router(upload_router.router, prefix="/api", tags=["Upload"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])

# Serve uploaded files at /uploads/...
app.mount("/uploads", StaticFiles(directory=str(storage.get_uploads_dir())), name="uploads")
