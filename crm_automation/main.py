from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from crm_automation.core.config import settings
from crm_automation.core.observability import (
    http_exception_handler,
    log_event,
    logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from crm_automation.db.session import SessionLocal, engine
from crm_automation.routers import events, webhooks, workflows
from crm_automation.services.engine import AutomationEngine
from crm_automation.services.scheduler import build_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    automation_engine = AutomationEngine(session_factory=SessionLocal)
    app.state.automation_engine = automation_engine
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler(automation_engine)
        scheduler.start()
        log_event(logger, "scheduler_started", jobs=[job.id for job in scheduler.get_jobs()])
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=True)
        automation_engine.shutdown(wait=True)
        app.state.automation_engine = None


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Event-driven CRM automation engine.\n\n"
        "CRUD services post domain events to `POST /events`. Matching workflows run "
        "their actions and matching webhook subscriptions receive signed deliveries.\n\n"
        "Every call carries the tenant in `X-Business-Id` and the acting user in `X-User-Id`."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "events", "description": "Domain event ingestion."},
        {"name": "workflows", "description": "Workflow rules, templates, dry runs, execution history and entity change requests."},
        {"name": "webhooks", "description": "Webhook subscriptions, test sends, delivery logs, stats and retry sweeps."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events.router)
app.include_router(workflows.router)
app.include_router(webhooks.router)


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
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
