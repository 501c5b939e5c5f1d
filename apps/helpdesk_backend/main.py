from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from apps.helpdesk_backend import models  # noqa: F401
from apps.helpdesk_backend.routers.cron import router as cron_router
from apps.helpdesk_backend.routers.health import router as health_router
from apps.helpdesk_backend.routers.tickets import router as tickets_router
from common_core.guardrails import validate_runtime_secrets
from common_core.logging_setup import configure_logging
from common_core.request_id import RequestIdMiddleware

log = logging.getLogger("helpdesk.backend")

app = FastAPI(title="Helpdesk Ticket Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestIdMiddleware)

app.include_router(health_router)
app.include_router(tickets_router)
app.include_router(cron_router)


@app.on_event("startup")
def startup() -> None:
    configure_logging(component="helpdesk_backend")
    validate_runtime_secrets()
    # Schema is owned by Alembic; nothing is created here.
    log.info("helpdesk_backend_started", extra={"component": "helpdesk_backend"})
