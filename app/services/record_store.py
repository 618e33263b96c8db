"""
SQLAlchemy-backed record store for tracked orders and returns.

Reads stream through keyset pagination on the primary key so a sync never
loads the whole collection. Writes are single-record and leave committing to
the caller.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models import (
    CarrierCode,
    DropshipOrder,
    OwnerType,
    RtvReturn,
    TrackingHistory,
    TrackingLog,
    utc_now,
)
from app.services.carrier_registry import resolve_code

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200


class RecordNotFoundError(LookupError):
    """No order or return matches the given id or shipment id."""


MODELS = {
    OwnerType.ORDER: DropshipOrder,
    OwnerType.RETURN: RtvReturn,
}

# owner type -> (shipment id column, carrier name column)
SHIPMENT_COLUMNS = {
    OwnerType.ORDER: ("fwd_awb", "fwd_carrier"),
    OwnerType.RETURN: ("tracking_number", "shipping_partner"),
}

TRACKING_FIELDS = (
    "tracking_status",
    "current_location",
    "tracking_last_checked",
    "last_tracking_update",
    "tracking_error",
    "tracking_failure_count",
    "is_tracking_active",
    "tracking_source",
    "tracking_data",
    "actual_delivery_date",
    "partner_verified_status",
    "partner_verified_at",
    "partner_verified_source",
    "partner_verified_raw",
)


@dataclass
class ShipmentReference:
    """Link between a carrier shipment id and the record that owns it."""

    shipment_id: str
    carrier_text: Optional[str]
    owner_type: OwnerType
    owner_id: str
    business_status: Optional[str] = None
    raw_row: Optional[dict] = None

    @property
    def carrier_code(self) -> Optional[CarrierCode]:
        return resolve_code(self.carrier_text)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TrackingRecordState:
    owner_type: OwnerType
    owner_id: str
    shipment_id: str
    carrier: Optional[str]
    tracking_status: Optional[str]
    current_location: Optional[str]
    last_checked_at: Optional[datetime]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    failure_count: int
    is_tracking_active: bool
    tracking_source: Optional[str]
    actual_delivery_date: Optional[datetime] = None
    partner_verified_status: Optional[str] = None
    partner_verified_at: Optional[datetime] = None
    history: List[dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownerType": self.owner_type.value,
            "ownerId": self.owner_id,
            "awb": self.shipment_id,
            "carrier": self.carrier,
            "trackingStatus": self.tracking_status,
            "currentLocation": self.current_location,
            "lastCheckedAt": _iso(self.last_checked_at),
            "lastSuccessAt": _iso(self.last_success_at),
            "lastError": self.last_error,
            "failureCount": self.failure_count,
            "isTrackingActive": self.is_tracking_active,
            "trackingSource": self.tracking_source,
            "actualDeliveryDate": _iso(self.actual_delivery_date),
            "partnerVerifiedStatus": self.partner_verified_status,
            "partnerVerifiedAt": _iso(self.partner_verified_at),
            "history": self.history,
        }


class TrackingRecordStore:
    def __init__(self, db: Session):
        self.db = db

    # --- reads ---

    def _to_ref(self, owner_type: OwnerType, record) -> ShipmentReference:
        id_col, carrier_col = SHIPMENT_COLUMNS[owner_type]
        return ShipmentReference(
            shipment_id=(getattr(record, id_col) or "").strip(),
            carrier_text=getattr(record, carrier_col),
            owner_type=owner_type,
            owner_id=record.id,
            business_status=record.status,
            raw_row=getattr(record, "raw_row", None),
        )

    def _base_query(self, owner_type: OwnerType):
        model = MODELS[owner_type]
        id_col, _ = SHIPMENT_COLUMNS[owner_type]
        column = getattr(model, id_col)
        return self.db.query(model).filter(column.isnot(None), column != "")

    def iter_shipment_refs(
        self,
        owner_type: OwnerType,
        page_size: int = DEFAULT_PAGE_SIZE,
        active_only: bool = False,
        stale_before: Optional[datetime] = None,
    ) -> Iterator[ShipmentReference]:
        """Yield references for records with a non-empty shipment id, one page at a time."""
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        model = MODELS[owner_type]
        query = self._base_query(owner_type)
        if active_only:
            query = query.filter(model.is_tracking_active.is_(True))
        if stale_before is not None:
            query = query.filter(
                or_(model.tracking_last_checked.is_(None), model.tracking_last_checked < stale_before)
            )
        last_id = None
        while True:
            page_query = query
            if last_id is not None:
                page_query = page_query.filter(model.id > last_id)
            page = page_query.order_by(model.id).limit(page_size).all()
            if not page:
                return
            for record in page:
                ref = self._to_ref(owner_type, record)
                if ref.shipment_id:
                    yield ref
            last_id = page[-1].id
            if len(page) < page_size:
                return

    def find_shipments_needing_update(
        self,
        owner_type: OwnerType,
        staleness: timedelta,
        limit: Optional[int] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[ShipmentReference]:
        """Active records not checked within the staleness window."""
        stale_before = utc_now() - staleness
        count = 0
        for ref in self.iter_shipment_refs(owner_type, page_size=page_size, active_only=True, stale_before=stale_before):
            if limit is not None and count >= limit:
                return
            count += 1
            yield ref

    def find_refs_by_awb(self, awb: str) -> List[ShipmentReference]:
        """All orders and returns carrying this shipment id."""
        awb = (awb or "").strip()
        if not awb:
            return []
        refs = []
        for owner_type, model in MODELS.items():
            id_col, _ = SHIPMENT_COLUMNS[owner_type]
            for record in self.db.query(model).filter(getattr(model, id_col) == awb).order_by(model.id).all():
                refs.append(self._to_ref(owner_type, record))
        return refs

    def get_record(self, ref: ShipmentReference):
        record = self.db.get(MODELS[ref.owner_type], ref.owner_id)
        if record is None:
            raise RecordNotFoundError(f"{ref.owner_type.value} {ref.owner_id} not found")
        return record

    def get_history(self, ref: ShipmentReference) -> List[TrackingHistory]:
        return (
            self.db.query(TrackingHistory)
            .filter(TrackingHistory.owner_type == ref.owner_type, TrackingHistory.owner_id == ref.owner_id)
            .order_by(TrackingHistory.id)
            .all()
        )

    def get_state(self, ref: ShipmentReference) -> TrackingRecordState:
        record = self.get_record(ref)
        history = [
            {
                "timestamp": _iso(h.timestamp),
                "status": h.status,
                "location": h.location,
                "remarks": h.remarks,
                "source": h.source,
            }
            for h in self.get_history(ref)
        ]
        return TrackingRecordState(
            owner_type=ref.owner_type,
            owner_id=ref.owner_id,
            shipment_id=ref.shipment_id,
            carrier=ref.carrier_text,
            tracking_status=record.tracking_status,
            current_location=record.current_location,
            last_checked_at=record.tracking_last_checked,
            last_success_at=record.last_tracking_update,
            last_error=record.tracking_error,
            failure_count=record.tracking_failure_count or 0,
            is_tracking_active=bool(record.is_tracking_active),
            tracking_source=record.tracking_source,
            actual_delivery_date=record.actual_delivery_date,
            partner_verified_status=record.partner_verified_status,
            partner_verified_at=record.partner_verified_at,
            history=history,
        )

    # --- writes ---

    def update_tracking_fields(self, ref: ShipmentReference, fields: Dict[str, Any]):
        record = self.get_record(ref)
        for name, value in fields.items():
            if name not in TRACKING_FIELDS:
                raise ValueError(f"{name} is not a tracking field")
            setattr(record, name, value)
        self.db.flush()
        return record

    def append_history(self, ref: ShipmentReference, entry: Dict[str, Any]) -> bool:
        """
        Append a history entry; returns False when it repeats the latest one.
        Only status/location/remarks/source changes count, so a re-poll that
        sees nothing new leaves history untouched.
        """
        latest = (
            self.db.query(TrackingHistory)
            .filter(TrackingHistory.owner_type == ref.owner_type, TrackingHistory.owner_id == ref.owner_id)
            .order_by(TrackingHistory.id.desc())
            .first()
        )
        if latest is not None and (
            latest.status == entry["status"]
            and latest.location == entry.get("location")
            and latest.remarks == entry.get("remarks")
            and latest.source == entry["source"]
        ):
            return False
        self.db.add(
            TrackingHistory(
                owner_type=ref.owner_type,
                owner_id=ref.owner_id,
                timestamp=entry["timestamp"],
                status=entry["status"],
                location=entry.get("location"),
                remarks=entry.get("remarks"),
                source=entry["source"],
            )
        )
        self.db.flush()
        return True

    def add_audit_entry(
        self,
        ref: ShipmentReference,
        *,
        courier: Optional[str],
        source: str,
        status: Optional[str] = None,
        original_status: Optional[str] = None,
        current_location: Optional[str] = None,
        response: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> TrackingLog:
        entry = TrackingLog(
            awb_number=ref.shipment_id,
            courier=courier,
            status=status,
            original_status=original_status,
            current_location=current_location,
            source=source,
            response=response,
            error=error,
            linked_order_id=ref.owner_id if ref.owner_type == OwnerType.ORDER else None,
            linked_return_id=ref.owner_id if ref.owner_type == OwnerType.RETURN else None,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def recent_audit_entries(self, awb: str, limit: int = 20) -> List[TrackingLog]:
        return (
            self.db.query(TrackingLog)
            .filter(TrackingLog.awb_number == awb)
            .order_by(TrackingLog.created_at.desc())
            .limit(limit)
            .all()
        )
