import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app import config
from backend.app.api.routes.alerts import router as alerts_router
from backend.app.api.routes.approvals import router as approvals_router
from backend.app.api.routes.ingest import router as ingest_router
from backend.app.api.routes.scheduler import router as scheduler_router
from backend.app.api.routes.webhooks import router as webhooks_router
from backend.app.services.scheduler_service import SchedulerLoop


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = ["http://localhost:5173", "http://127.0.0.1:5173"]
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    return origins


app = FastAPI(title="TellBill Revenue Engine", version="0.1.0")

_scheduler = SchedulerLoop()


@app.on_event("startup")
def _start_scheduler():
    if config.scheduler_enabled():
        _scheduler.start()
    else:
        logger.info("scheduler disabled (SCHEDULER_ENABLED not set)")


@app.on_event("shutdown")
def _stop_scheduler():
    _scheduler.stop()


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(alerts_router)
app.include_router(approvals_router)
app.include_router(ingest_router)
app.include_router(webhooks_router)
app.include_router(scheduler_router)


@app.get("/health")
def health():
    return {"ok": True, "scheduler_running": _scheduler.running}
