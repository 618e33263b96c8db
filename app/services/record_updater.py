"""
Record updater: the only writer of tracking fields.

Every fetch attempt (and every webhook push) ends here. Success overwrites the
live status and resets the failure counter; failure records the error and
deactivates tracking after too many consecutive failures. Each attempt also
writes one audit entry.
"""
import logging
from datetime import datetime
from typing import Optional

from app.config import settings
from app.models import TrackingSource, utc_now
from app.services.carrier_adapter import RawStatusPayload
from app.services.fetch_executor import FetchOutcome
from app.services.record_store import ShipmentReference, TrackingRecordStore
from app.services.status_taxonomy import classify_status, is_delivered

logger = logging.getLogger(__name__)


class RecordUpdater:
    def __init__(self, store: TrackingRecordStore, failure_threshold: Optional[int] = None):
        self.store = store
        self.failure_threshold = failure_threshold or settings.TRACKING_FAILURE_THRESHOLD
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")

    def apply(self, ref: ShipmentReference, outcome: FetchOutcome) -> bool:
        """
        Persist one fetch outcome onto its record.
        Returns True when the record's tracking status changed.
        """
        record = self.store.get_record(ref)
        courier = outcome.carrier_code.value if outcome.carrier_code else ref.carrier_text

        if outcome.ok and outcome.payload is not None:
            changed = self._apply_success(ref, record, outcome)
            payload = outcome.payload
            self.store.add_audit_entry(
                ref,
                courier=courier,
                source=payload.source.value,
                status=outcome.status,
                original_status=payload.status_text or None,
                current_location=payload.location,
                response=payload.summary(),
            )
            return changed

        self._apply_failure(ref, record, outcome)
        self.store.add_audit_entry(
            ref,
            courier=courier,
            source=(outcome.payload.source.value if outcome.payload else "fetch"),
            error=outcome.error_message,
            response={"errorKind": outcome.error.kind if outcome.error else None, "snippet": getattr(outcome.error, "snippet", None)},
        )
        return False

    def _apply_success(self, ref: ShipmentReference, record, outcome: FetchOutcome) -> bool:
        payload = outcome.payload
        status = outcome.status or classify_status(payload.status_text, ref.owner_type).value
        previous = record.tracking_status
        fields = {
            "tracking_status": status,
            "current_location": payload.location or record.current_location,
            "tracking_last_checked": outcome.checked_at,
            "last_tracking_update": outcome.checked_at,
            "tracking_error": None,
            "tracking_failure_count": 0,
            "is_tracking_active": True,
            "tracking_source": payload.source.value,
            "tracking_data": payload.summary(),
        }
        if is_delivered(status) and record.actual_delivery_date is None:
            fields["actual_delivery_date"] = outcome.checked_at
        self.store.update_tracking_fields(ref, fields)
        self.store.append_history(
            ref,
            {
                "timestamp": outcome.checked_at,
                "status": status,
                "location": payload.location,
                "remarks": payload.remarks or payload.status_text or None,
                "source": payload.source.value,
            },
        )
        if previous != status:
            logger.info(
                "%s %s awb=%s status %s -> %s", ref.owner_type.value, ref.owner_id, ref.shipment_id, previous, status
            )
        return previous != status

    def _apply_failure(self, ref: ShipmentReference, record, outcome: FetchOutcome) -> None:
        error = outcome.error_message or "unknown error"
        # Same outcome applied twice must not count as two failures
        already_applied = record.tracking_last_checked == outcome.checked_at and record.tracking_error == error
        failures = record.tracking_failure_count or 0
        if not already_applied:
            failures += 1
        fields = {
            "tracking_last_checked": outcome.checked_at,
            "tracking_error": error,
            "tracking_failure_count": failures,
        }
        if failures >= self.failure_threshold:
            if record.is_tracking_active:
                logger.warning(
                    "Deactivating tracking for %s %s awb=%s after %s consecutive failures: %s",
                    ref.owner_type.value, ref.owner_id, ref.shipment_id, failures, error,
                )
            fields["is_tracking_active"] = False
        self.store.update_tracking_fields(ref, fields)

    def apply_heuristic(self, ref: ShipmentReference, status) -> bool:
        """Set a locally derived status; no network, no audit entry. Returns True when changed."""
        value = status.value if hasattr(status, "value") else str(status)
        record = self.store.get_record(ref)
        if record.tracking_status == value:
            return False
        fields = {"tracking_status": value, "tracking_source": TrackingSource.HEURISTIC.value}
        if is_delivered(status) and record.actual_delivery_date is None:
            fields["actual_delivery_date"] = utc_now()
        self.store.update_tracking_fields(ref, fields)
        return True

    def apply_partner_snapshot(self, ref: ShipmentReference, outcome: FetchOutcome) -> None:
        """Store what the carrier currently says next to (not over) the system status."""
        payload = outcome.payload
        if outcome.ok and payload is not None:
            partner_status = payload.status_text or None
            raw = payload.summary()
            source = payload.source.value
        else:
            partner_status = None
            raw = {"error": outcome.error_message}
            source = None
        self.store.update_tracking_fields(
            ref,
            {
                "partner_verified_status": partner_status,
                "partner_verified_at": outcome.checked_at,
                "partner_verified_source": source,
                "partner_verified_raw": raw,
            },
        )
        self.store.add_audit_entry(
            ref,
            courier=outcome.carrier_code.value if outcome.carrier_code else ref.carrier_text,
            source=f"manual-verify:{source or 'error'}",
            status=outcome.status,
            original_status=partner_status,
            current_location=payload.location if payload else None,
            response=raw,
            error=outcome.error_message,
        )

    def apply_push(
        self,
        ref: ShipmentReference,
        raw_status: str,
        timestamp: Optional[datetime] = None,
        location: Optional[str] = None,
        remarks: Optional[str] = None,
    ) -> bool:
        """Webhook / manual push: same path as a successful fetch, source=webhook."""
        checked_at = timestamp or utc_now()
        payload = RawStatusPayload(
            source=TrackingSource.WEBHOOK,
            fetched_at=checked_at,
            status_text=raw_status or "",
            location=location,
            remarks=remarks,
            status_time=checked_at.isoformat(),
        )
        outcome = FetchOutcome(
            shipment_id=ref.shipment_id,
            carrier_code=ref.carrier_code,
            owner_type=ref.owner_type,
            checked_at=checked_at,
            payload=payload,
            status=classify_status(raw_status, ref.owner_type).value,
        )
        return self.apply(ref, outcome)

    def reset_tracking(self, ref: ShipmentReference) -> None:
        """Re-enable automatic tracking for a record that was deactivated."""
        self.store.update_tracking_fields(
            ref,
            {"is_tracking_active": True, "tracking_failure_count": 0, "tracking_error": None},
        )
