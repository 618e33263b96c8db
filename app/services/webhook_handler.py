"""
Carrier webhook handler for shipment status pushes.

Payload: {event_type, waybill, status, timestamp, location, remarks}.
Pushes go through the same record updater as polled fetches.
"""
import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models import WebhookEvent, utc_now
from app.services.record_store import TrackingRecordStore
from app.services.record_updater import RecordUpdater

logger = logging.getLogger(__name__)


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify webhook signature: base64(HMAC-SHA256(secret, raw body)).
    """
    if not secret or not signature or not payload:
        return False
    computed = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(computed).decode("utf-8")
    return hmac.compare_digest(computed_b64, signature.strip())


def parse_push_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch seconds/millis -> naive UTC; None when unparseable."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        logger.warning("Unparseable webhook timestamp %r; using receive time", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def record_webhook_event(db: Session, source: str, topic: str, summary: str) -> WebhookEvent:
    event = WebhookEvent(source=source, topic=topic, payload_summary=summary[:500])
    db.add(event)
    db.flush()
    return event


def process_tracking_push(
    db: Session,
    shipment_id: str,
    raw_status: str,
    timestamp: Optional[datetime] = None,
    location: Optional[str] = None,
    remarks: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Apply a pushed status to every order and return carrying shipment_id.
    Caller commits.
    """
    store = TrackingRecordStore(db)
    updater = RecordUpdater(store)
    refs = store.find_refs_by_awb(shipment_id)
    if not refs:
        logger.warning("Webhook for unknown AWB %s (status=%r)", shipment_id, raw_status)
        return {"awb": shipment_id, "matched": 0, "changed": 0}

    changed = 0
    for ref in refs:
        if updater.apply_push(ref, raw_status, timestamp=timestamp, location=location, remarks=remarks):
            changed += 1
    logger.info("Webhook AWB %s status=%r applied to %s record(s), %s changed", shipment_id, raw_status, len(refs), changed)
    return {"awb": shipment_id, "matched": len(refs), "changed": changed}


def process_carrier_webhook(db: Session, carrier: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Handle one webhook body end to end, recording it as a WebhookEvent."""
    event_type = str(payload.get("event_type") or payload.get("eventType") or "status_update")
    awb = str(payload.get("waybill") or payload.get("awb") or payload.get("awbNumber") or "").strip()
    status = payload.get("status") or ""
    event = record_webhook_event(db, carrier.lower(), event_type, f"awb={awb} status={status}")
    if not awb:
        event.error = "missing waybill"
        event.processed_at = utc_now()
        db.commit()
        raise ValueError("Webhook payload has no waybill")

    try:
        result = process_tracking_push(
            db,
            awb,
            str(status),
            timestamp=parse_push_timestamp(payload.get("timestamp")),
            location=payload.get("location"),
            remarks=payload.get("remarks"),
        )
    except Exception as e:
        db.rollback()
        logger.exception("Webhook process error carrier=%s awb=%s", carrier, awb)
        failed = record_webhook_event(db, carrier.lower(), event_type, f"awb={awb} status={status}")
        failed.error = str(e)[:500]
        failed.processed_at = utc_now()
        db.commit()
        raise
    event.processed_at = utc_now()
    db.commit()
    result["eventType"] = event_type
    return result
