import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from deskrelay.config import settings
from deskrelay.database import get_db
from deskrelay.logging_config import get_logger, setup_logging
from deskrelay.models import Agent, AssignmentRecord, Conversation, Customer, Message
from deskrelay.routers import conversations, maintenance, webhook
from deskrelay.runtime import get_runtime, init_runtime, is_initialized, shutdown_runtime
from deskrelay.services.timeout_sweep import sweep_and_notify

setup_logging(settings.log_level)

app = FastAPI(
    title="DeskRelay API",
    description="Routes WhatsApp conversations between an AI assistant and human agents",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(conversations.router)
app.include_router(maintenance.router)

worker_logger = get_logger("workers")
_worker_tasks: list[asyncio.Task] = []


def _are_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweep_worker_enabled


async def _sweep_worker_loop() -> None:
    interval_seconds = max(settings.sweep_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            report = await sweep_and_notify(get_runtime())
            if report.applied or report.failed:
                worker_logger.info(
                    "Sweep worker processed",
                    extra={"context": report.as_dict()},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Sweep worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


async def _dedup_purge_loop() -> None:
    interval_seconds = max(settings.dedup_purge_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            purged = await get_runtime().deduplicator.purge_expired()
            if purged:
                worker_logger.debug(f"Purged {purged} dedup receipts")
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Dedup purge loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_runtime() -> None:
    if not is_initialized():
        init_runtime(settings)
    if not _are_workers_enabled():
        return
    _worker_tasks.append(asyncio.create_task(_sweep_worker_loop()))
    _worker_tasks.append(asyncio.create_task(_dedup_purge_loop()))
    worker_logger.info("Background workers started")


@app.on_event("shutdown")
async def stop_runtime() -> None:
    for task in _worker_tasks:
        task.cancel()
    for task in _worker_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _worker_tasks.clear()
    await shutdown_runtime()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "customers": db.query(Customer).count(),
        "agents": db.query(Agent).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "assignments": db.query(AssignmentRecord).count(),
    }
