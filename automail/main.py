from contextlib import asynccontextmanager

from sqlalchemy import text

from automail.core.errors import AutomationError
from automail.core.observability import (
    automation_error_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from automail.core.config import settings
from automail.db.session import SessionLocal, engine
from automail.routers import alerts, automations, events
from automail.services.scheduler_service import SchedulerService


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler: SchedulerService | None = None
    if settings.scheduler_enabled:
        scheduler = SchedulerService(SessionLocal)
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Marketing automation sequencing engine.\n\n"
        "Swagger quick test flow:\n"
        "1. `POST /automations` to create a draft sequence, then `POST /automations/{id}/activate`.\n"
        "2. `POST /events` with a `customer_registered` event, then `POST /events/process`.\n"
        "3. `POST /automations/queue/run` to dispatch due steps and inspect `/automations/{id}/enrollments`."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "automations", "description": "Automation definitions, lifecycle, enrollments and dispatch."},
        {"name": "events", "description": "Trigger event intake and inbox processing."},
        {"name": "alerts", "description": "Operational alerts raised by the engine."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(AutomationError, automation_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Admin UI dev servers run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(automations.router)
app.include_router(events.router)
app.include_router(alerts.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {"ok": True, "scheduler_running": bool(scheduler and scheduler.running)}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
