import asyncio
import logging
import sys
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from booksync import __version__
from booksync.config import settings
from booksync.routers import connection, mappings, store, sync
from booksync.utils.logger import logger

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Books Sync API", version=__version__)

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


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


app.include_router(connection.router)
app.include_router(sync.router)
app.include_router(mappings.router)
app.include_router(store.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Books Sync API %s starting up...", __version__)

    from booksync.init_db import init_db

    init_db()

    if settings.WEB_APP_URL and settings.INTERNAL_API_KEY:
        from booksync.workers import run_retry_worker_loop

        asyncio.create_task(run_retry_worker_loop())
        logger.info("Retry worker started (runs every %s seconds)", settings.RETRY_WORKER_INTERVAL_SECONDS)
    else:
        logger.info("Retry worker not started: WEB_APP_URL or INTERNAL_API_KEY missing")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from booksync.models_sqlalchemy import engine

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
    return {
        "message": "Books Sync API",
        "version": __version__,
        "docs": "/docs",
    }
