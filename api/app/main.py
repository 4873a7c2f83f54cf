from __future__ import annotations

import logging

from fastapi import FastAPI

from api.app.config import get_settings
from api.app.middleware.request_logging import RequestLoggingMiddleware
from api.app.routes import health, jobs

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Jobs API",
    description="Enqueue and observe background jobs",
    version="0.1.0",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(health.router)
app.include_router(jobs.router, prefix="/v1")
