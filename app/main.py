from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings
from app.db import init_db
from app.logging_config import configure_logging
from app.routers import fulfillment, webhooks
from app.workers.scheduler import get_job_status, shutdown_scheduler, start_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    if settings.scheduler_enabled:
        start_scheduler()
    try:
        yield
    finally:
        shutdown_scheduler()


app = FastAPI(title='Dropship Fulfillment Engine', lifespan=lifespan)

app.include_router(webhooks.router)
app.include_router(fulfillment.router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={'detail': {'kind': 'ValidationError', 'message': 'Invalid request', 'errors': jsonable_encoder(exc.errors())}},
    )


@app.get('/health')
def health() -> dict:
    return {
        'status': 'ok',
        'supplier_provider': settings.supplier_provider,
        'storefront_provider': settings.storefront_provider,
        'scheduler_enabled': settings.scheduler_enabled,
        'jobs': get_job_status(),
    }
