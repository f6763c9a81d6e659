import asyncio
import os
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from whatsdesk.config import settings
from whatsdesk.database import SessionLocal, init_db
from whatsdesk.logging_config import get_logger, setup_logging
from whatsdesk.routers import health, tickets, whatsapp
from whatsdesk.services.auto_await_service import process_auto_await
from whatsdesk.services.event_service import event_bus
from whatsdesk.services.inbound_service import InboundPipeline
from whatsdesk.services.reminder_service import process_due_reminders
from whatsdesk.services.task_service import TaskTracker
from whatsdesk.services.whatsapp import AuthStateStore, ConnectionSupervisor, load_provider_client

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="WhatsDesk API",
    description="Support desk over a WhatsApp connection",
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

app.include_router(health.router)
app.include_router(tickets.router)
app.include_router(whatsapp.router)
app.mount(settings.media_url_prefix, StaticFiles(directory=settings.media_dir, check_dir=False), name="media")

app.state.event_bus = event_bus
app.state.tasks = TaskTracker(settings.max_background_tasks)
app.state.supervisor = None

_job_tasks: list[asyncio.Task] = []


def _jobs_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.jobs_enabled


async def _job_loop(name: str, interval_seconds: float, job: Callable) -> None:
    job_logger = get_logger(f"jobs.{name}")
    while True:
        try:
            await asyncio.sleep(max(interval_seconds, 0.1))
            db = SessionLocal()
            try:
                results = job(db, event_bus)
                if results and any(results.get(k) for k in ("moved", "notified")):
                    job_logger.info(f"{name} job processed", extra={"context": results})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            job_logger.error(f"{name} job loop failed", extra={"context": {"error": str(exc)}})


def build_supervisor() -> ConnectionSupervisor | None:
    if not settings.whatsapp_provider:
        logger.warning("WHATSAPP_PROVIDER not set, WhatsApp connection disabled")
        return None

    supervisor = ConnectionSupervisor(
        client=load_provider_client(settings.whatsapp_provider),
        auth_store=AuthStateStore(settings.auth_dir, settings.legacy_auth_dir),
        event_bus=event_bus,
        tasks=app.state.tasks,
    )
    pipeline = InboundPipeline(supervisor, event_bus=event_bus, tasks=app.state.tasks)
    supervisor.message_handler = pipeline.handle
    return supervisor


@app.on_event("startup")
async def startup() -> None:
    init_db()

    supervisor = build_supervisor()
    app.state.supervisor = supervisor
    if supervisor is not None:
        await supervisor.start()

    if _jobs_enabled():
        _job_tasks.append(
            asyncio.create_task(_job_loop("auto_await", settings.auto_await_interval_seconds, process_auto_await))
        )
        _job_tasks.append(
            asyncio.create_task(_job_loop("reminders", settings.reminder_interval_seconds, process_due_reminders))
        )
        logger.info("Background jobs started")


@app.on_event("shutdown")
async def shutdown() -> None:
    for task in _job_tasks:
        task.cancel()
    for task in _job_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _job_tasks.clear()

    supervisor = app.state.supervisor
    if supervisor is not None:
        await supervisor.stop()
    else:
        await app.state.tasks.drain()
