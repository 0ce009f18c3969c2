from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.logging import configure_logging
from app.models import employee, pay_period, qb_connection, sync_queue_item, time_entry  # noqa: F401
from app.routers.auth import router as auth_router
from app.routers.employees import router as employees_router
from app.routers.pay_periods import router as pay_periods_router
from app.routers.qbwc import router as qbwc_router
from app.routers.quickbooks import router as quickbooks_router
from app.routers.sync_queue import router as sync_queue_router
from app.routers.time_entries import router as time_entries_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(
    title="Payroll Sync",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(employees_router)
app.include_router(time_entries_router)
app.include_router(pay_periods_router)
app.include_router(sync_queue_router)
app.include_router(quickbooks_router)
app.include_router(qbwc_router)


@app.get("/")
def root():
    return {"status": "Payroll Sync running"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
