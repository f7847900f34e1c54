from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import require_scheduler_operator
from backend.app.db import get_db
from backend.app.services import scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.post("/tick", dependencies=[Depends(require_scheduler_operator)])
def post_tick():
    # sweeps open their own sessions
    return asdict(scheduler_service.run_tick())


@router.get("/last-tick", dependencies=[Depends(require_scheduler_operator)])
def get_last_tick(db: Session = Depends(get_db)):
    row = scheduler_service.get_last_run(db)
    if not row:
        return None
    result = row.result_json or {}
    return {
        "run_id": row.id,
        "started_at": row.started_at,
        "finished_at": row.finished_at,
        "sweeps": {
            sweep.get("sweep"): {
                "scanned": sweep.get("scanned", 0),
                "changed": sweep.get("changed", 0),
                "notifications_sent": sweep.get("notifications_sent", 0),
                "notifications_failed": sweep.get("notifications_failed", 0),
                "error_count": len(sweep.get("errors") or []),
            }
            for sweep in result.get("sweeps", [])
        },
    }
