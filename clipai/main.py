import logging
import os
import time
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.engine.url import make_url
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from clipai.core.env import load_env
from clipai.core.db import Base, SessionLocal, engine, DATABASE_URL
from clipai.api import build_meta, error_detail, get_orchestrator, router as api_router
from clipai.core.transaction import TransactionError
from clipai.workers.dispatch import ThreadPoolDispatcher

load_env()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

APP_ENV = os.getenv("APP_ENV", "development").lower()
DOCS_URL = None if APP_ENV == "production" else "/docs"
REDOC_URL = None if APP_ENV == "production" else "/redoc"
OPENAPI_URL = None if APP_ENV == "production" else "/openapi.json"
logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start_time = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "API_REQUEST",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "request_id": request_id,
            },
        )
        return response


app = FastAPI(
    title="ClipAI Backend",
    docs_url=DOCS_URL,
    redoc_url=REDOC_URL,
    openapi_url=OPENAPI_URL,
)

app.add_middleware(RequestContextMiddleware)

cors_allowed_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "error": error_detail(code, message, details),
            "meta": build_meta(request),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        request,
        422,
        "VALIDATION_ERROR",
        "Request validation failed",
        {"errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        return _error_response(
            request,
            exc.status_code,
            detail.get("code") or "HTTP_ERROR",
            detail.get("message") or "Request failed",
            detail.get("details"),
        )
    return _error_response(request, exc.status_code, "HTTP_ERROR", str(detail))


@app.exception_handler(TransactionError)
async def transaction_exception_handler(request: Request, exc: TransactionError):
    logger.error("STORE_WRITE_FAILED path=%s error=%s", request.url.path, exc)
    return _error_response(request, 503, "STORE_UNAVAILABLE", "Database write failed")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception during request.")
    return _error_response(request, 500, "INTERNAL_ERROR", "Unexpected server error")


def init_db():
    for _ in range(30):  # ~30s
        try:
            Base.metadata.create_all(bind=engine)
            return
        except OperationalError:
            time.sleep(1)
    try:
        Base.metadata.create_all(bind=engine)
    except OperationalError:
        logger.warning("Database unavailable during init_db; continuing without DB.")


init_db()


def mask_database_url(url: str) -> str:
    try:
        return make_url(url).render_as_string(hide_password=True)
    except Exception:
        return "<invalid DATABASE_URL>"


@app.on_event("startup")
def fail_fast_db_check():
    logger.info("DATABASE_URL: %s", mask_database_url(DATABASE_URL))
    logger.info(
        "Job config: JOB_DISPATCH_BACKEND=%s STORAGE_ROOT=%s OPENAI_CONFIGURED=%s",
        os.environ.get("JOB_DISPATCH_BACKEND", "thread"),
        os.environ.get("STORAGE_ROOT", "./uploads"),
        bool((os.environ.get("OPENAI_API_KEY") or "").strip()),
    )
    session = SessionLocal()
    try:
        session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database connectivity check failed during startup.")
    finally:
        session.close()


@app.on_event("shutdown")
def drain_background_jobs():
    if not get_orchestrator.cache_info().currsize:
        return
    dispatcher = get_orchestrator().dispatcher
    if isinstance(dispatcher, ThreadPoolDispatcher):
        active = dispatcher.active_jobs()
        if active:
            logger.info("Waiting for %s in-flight jobs before shutdown", len(active))
        dispatcher.shutdown(wait=True)


@app.get("/health", include_in_schema=False)
def health():
    return {
        "ok": True,
        "service": "clipai-api",
        "ts": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(api_router)
