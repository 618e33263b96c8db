"""
Tracking Controller - live refresh, manual verification and tracking state per AWB

RecordNotFoundError (404) and CarrierUnresolvedError (422) propagate to the
app-level exception handlers.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.http.requests.schemas import TrackBatchRequest
from app.services.record_store import TrackingRecordStore
from app.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_tracking_service(db: Session = Depends(get_db)) -> TrackingService:
    return TrackingService(db)


@router.post("/batch")
async def track_batch(
    body: TrackBatchRequest,
    service: TrackingService = Depends(get_tracking_service),
):
    """Live refresh for several AWBs at once. Unknown AWBs are reported per entry."""
    try:
        return await service.track_batch(body.awbs)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/manual-verify/{awb}")
async def manual_verify(
    awb: str,
    service: TrackingService = Depends(get_tracking_service),
):
    """Fetch the carrier's current status and store it next to the system status."""
    return await service.manual_verify(awb)


@router.get("/verify-summary/{awb}")
async def verify_summary(
    awb: str,
    service: TrackingService = Depends(get_tracking_service),
):
    """Stored verification snapshot vs system status."""
    return service.verify_summary(awb)


@router.get("/{awb}/state")
async def get_tracking_state(
    awb: str,
    service: TrackingService = Depends(get_tracking_service),
):
    """Stored tracking state and history, no carrier call."""
    return {"awb": awb, "records": service.get_state(awb)}


@router.get("/{awb}/logs")
async def get_tracking_logs(
    awb: str,
    db: Session = Depends(get_db),
    limit: int = Query(20, ge=1, le=100),
):
    """Audit log entries for an AWB, newest first."""
    rows = TrackingRecordStore(db).recent_audit_entries(awb, limit=limit)
    return [
        {
            "id": r.id,
            "courier": r.courier,
            "status": r.status,
            "originalStatus": r.original_status,
            "currentLocation": r.current_location,
            "source": r.source,
            "error": r.error,
            "linkedOrderId": r.linked_order_id,
            "linkedReturnId": r.linked_return_id,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]


@router.post("/{awb}/reset")
async def reset_tracking(
    awb: str,
    service: TrackingService = Depends(get_tracking_service),
):
    """Re-enable automatic tracking after it was deactivated by repeated failures."""
    return {"awb": awb, "records": service.reset_tracking(awb)}


@router.get("/{awb}")
async def track_single(
    awb: str,
    service: TrackingService = Depends(get_tracking_service),
):
    """Live refresh of one AWB."""
    records = await service.track_single(awb)
    return {"awb": awb, "records": records}
