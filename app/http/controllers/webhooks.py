"""
Carrier webhook receivers and manual status push.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.http.requests.schemas import StatusPushRequest
from app.models import WebhookEvent, utc_now
from app.services.carrier_registry import resolve_code
from app.services.webhook_handler import (
    parse_push_timestamp,
    process_carrier_webhook,
    process_tracking_push,
    record_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/events")
async def get_webhook_events(
    db: Session = Depends(get_db),
    limit: int = Query(50, le=100),
    source: Optional[str] = Query(None),
):
    """Recently received webhook events."""
    query = db.query(WebhookEvent).order_by(WebhookEvent.created_at.desc())
    if source:
        query = query.filter(WebhookEvent.source == source.lower())
    rows = query.limit(limit).all()
    return [
        {
            "id": r.id,
            "source": r.source,
            "topic": r.topic,
            "payloadSummary": r.payload_summary,
            "processedAt": r.processed_at.isoformat() if r.processed_at else None,
            "error": r.error,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]


@router.post("/update-status")
async def push_status_update(
    body: StatusPushRequest,
    db: Session = Depends(get_db),
):
    """Manual status push for one AWB; same path as a carrier webhook."""
    record_webhook_event(db, "manual", "status_update", f"awb={body.awb} status={body.status}")
    result = process_tracking_push(
        db,
        body.awb,
        body.status,
        timestamp=parse_push_timestamp(body.timestamp),
        location=body.location,
        remarks=body.remarks,
    )
    db.commit()
    if not result["matched"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No order or return with AWB {body.awb}")
    return result


@router.post("/{carrier}")
async def carrier_webhook_receive(
    carrier: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Public endpoint for carrier status pushes.
    When WEBHOOK_SECRET is set, X-Webhook-Signature must be base64(HMAC-SHA256(body)).
    """
    if resolve_code(carrier) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown carrier: {carrier}")
    raw_body = await request.body()
    secret = settings.WEBHOOK_SECRET
    if secret:
        signature = request.headers.get("X-Webhook-Signature") or ""
        if not verify_webhook_signature(raw_body, signature, secret):
            logger.warning("Carrier webhook: signature verification failed for carrier=%s", carrier)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw_body.decode("utf-8")) if raw_body else {}
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("Carrier webhook: invalid JSON %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be a JSON object")

    try:
        result = process_carrier_webhook(db, carrier, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        # Return 200 so the carrier does not retry; the failure is on the WebhookEvent row
        logger.exception("Carrier webhook process failed: %s", e)
        return {"ok": False, "error": str(e), "receivedAt": utc_now().isoformat()}
    return {"ok": True, **result}
