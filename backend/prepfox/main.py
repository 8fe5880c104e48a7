import asyncio
import logging
import os
import re
import sys
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from prepfox.config import settings
from prepfox.routers import (
    admin,
    auth,
    billing,
    carriers,
    labels,
    products,
    rates,
    shopify,
    webhooks,
)
from prepfox.utils.logger import logger

# Global logging configuration
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="PrepFox API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
if settings.FRONTEND_URL not in origins:
    origins.append(settings.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(auth.router)
app.include_router(carriers.router)
app.include_router(rates.router)
app.include_router(labels.router)
app.include_router(shopify.router)
app.include_router(billing.router)
app.include_router(products.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


def _run_migrations(database_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    ini_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini")
    alembic_cfg = Config(ini_path)
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")


@app.on_event("startup")
async def startup_event():
    logger.info("PrepFox API starting up...")
    database_url = settings.DATABASE_URL

    if "postgresql" in database_url:
        masked_url = re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", database_url)
        logger.info(f"Database URL: {masked_url}")
        try:
            _run_migrations(database_url)
            logger.info("Database migrations completed successfully")
        except Exception as e:
            # Startup continues; /healthz/db reports the database state.
            logger.error(f"Alembic migration failed: {e}")
        start_workers = True
    else:
        from prepfox.models_sqlalchemy import Base, engine
        from prepfox.models_sqlalchemy import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Using SQLite database; tables created from models")
        start_workers = False

    if settings.RUN_BACKGROUND_WORKERS is not None:
        start_workers = settings.RUN_BACKGROUND_WORKERS

    if start_workers:
        from prepfox.workers import run_token_refresh_worker_loop

        asyncio.create_task(run_token_refresh_worker_loop())
        logger.info(
            "Carrier token refresh worker started (runs every %s seconds)",
            settings.TOKEN_REFRESH_INTERVAL_SECONDS,
        )
    else:
        logger.info("Skipping background workers")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    from prepfox.models_sqlalchemy import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}: {str(e)}",
        )


@app.get("/")
async def root():
    return {"message": "PrepFox API", "version": "1.0.0", "docs": "/docs"}
