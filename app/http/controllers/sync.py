"""
Sync Controller - trigger, stop and inspect reconciliation runs
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.http.requests.schemas import SyncRunRequest
from app.models import SyncRun
from app.workers.scheduler import ReconciliationScheduler, SyncAlreadyRunningError

logger = logging.getLogger(__name__)
router = APIRouter()


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler not initialised")
    return scheduler


@router.post("/run")
async def run_sync(
    body: SyncRunRequest,
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
):
    """Run one reconciliation now and wait for the result."""
    try:
        result = await scheduler.run_once(
            live=body.live,
            trigger="manual",
            staleness=scheduler.staleness if body.onlyStale else None,
        )
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return result.to_dict()


@router.post("/stop")
async def stop_sync(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    """Ask the running reconciliation to stop at its next batch boundary."""
    return {"stopRequested": scheduler.request_stop()}


@router.get("/status")
async def sync_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)):
    return scheduler.get_status()


@router.get("/runs")
async def list_sync_runs(
    db: Session = Depends(get_db),
    limit: int = Query(20, le=100),
):
    """Most recent reconciliation runs."""
    rows = db.query(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit).all()
    return [
        {
            "id": r.id,
            "trigger": r.trigger,
            "live": r.live,
            "status": r.status.value if r.status else None,
            "recordsProcessed": r.records_processed,
            "recordsUpdated": r.records_updated,
            "recordsFailed": r.records_failed,
            "unresolvedCarriers": r.unresolved_carriers,
            "errorMessage": r.error_message,
            "startedAt": r.started_at.isoformat() if r.started_at else None,
            "finishedAt": r.finished_at.isoformat() if r.finished_at else None,
        }
        for r in rows
    ]
