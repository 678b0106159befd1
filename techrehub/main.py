import asyncio
import os
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from techrehub.config import settings
from techrehub.database import Base, SessionLocal, engine
from techrehub.logging_config import get_logger, setup_logging
from techrehub.routers import messenger, payments, whatsapp
from techrehub.services.session_store import purge_expired_sessions

setup_logging(settings.log_level)

app = FastAPI(
    title="TechRehub Chatbot API",
    description="WhatsApp and Messenger chatbot backend for TechRehub",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whatsapp.router)
app.include_router(messenger.router)
app.include_router(payments.router)

purge_logger = get_logger("session_purge_worker")
_purge_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_purge_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("SESSION_PURGE_ENABLED"), default=True)


def _get_purge_interval_seconds() -> float:
    interval_seconds = float(os.environ.get("SESSION_PURGE_INTERVAL_SECONDS", "900"))
    return max(interval_seconds, 1.0)


def _purge_once() -> int:
    db = SessionLocal()
    try:
        return purge_expired_sessions(db, timedelta(hours=settings.session_ttl_hours))
    finally:
        db.close()


async def _purge_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(_get_purge_interval_seconds())
            removed = await asyncio.to_thread(_purge_once)
            if removed:
                purge_logger.info("Session purge worker removed sessions", extra={"context": {"removed": removed}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            purge_logger.error(
                "Session purge worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def create_tables() -> None:
    if not _is_env_enabled(os.environ.get("DB_CREATE_TABLES"), default=False):
        return
    Base.metadata.create_all(bind=engine)
    purge_logger.info("Database tables ensured")


@app.on_event("startup")
async def start_purge_worker() -> None:
    global _purge_worker_task
    if not _is_purge_worker_enabled():
        return
    if _purge_worker_task is None or _purge_worker_task.done():
        _purge_worker_task = asyncio.create_task(_purge_worker_loop())
        purge_logger.info("Session purge worker started")


@app.on_event("shutdown")
async def stop_purge_worker() -> None:
    global _purge_worker_task
    if _purge_worker_task is None:
        return
    _purge_worker_task.cancel()
    try:
        await _purge_worker_task
    except asyncio.CancelledError:
        pass
    _purge_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
