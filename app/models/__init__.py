"""
SQLAlchemy models for tracked business records, tracking history and audit log.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, Enum as SQLEnum, Index
from sqlalchemy.sql import func
from app.database import Base
import enum
import uuid


def utc_now() -> datetime:
    """Naive UTC timestamp; all tracking timestamps are stored without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class OrderTrackingStatus(str, enum.Enum):
    PENDING = "pending"
    PICKED_UP = "picked_up"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    UNDELIVERED = "undelivered"
    RTO = "rto"
    RTO_DELIVERED = "rto_delivered"

class ReturnTrackingStatus(str, enum.Enum):
    INITIATED = "initiated"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    DELIVERED_TO_WAREHOUSE = "delivered_to_warehouse"
    QUALITY_CHECK = "quality_check"
    REFUNDED = "refunded"
    REPLACED = "replaced"
    REJECTED = "rejected"

class TrackingSource(str, enum.Enum):
    API = "api"
    HTML_SCRAPE = "html-scrape"
    WEBHOOK = "webhook"
    HEURISTIC = "heuristic"

class OwnerType(str, enum.Enum):
    ORDER = "ORDER"
    RETURN = "RETURN"

class CarrierCode(str, enum.Enum):
    DELHIVERY = "DELHIVERY"
    SHADOWFAX = "SHADOWFAX"
    XPRESSBEES = "XPRESSBEES"
    BLUEDART = "BLUEDART"
    DTDC = "DTDC"
    ECOM = "ECOM"
    FEDEX = "FEDEX"

class SyncRunStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TrackingFieldsMixin:
    """Tracking columns shared by every record that carries a shipment id."""

    tracking_status = Column("tracking_status", String, nullable=True, index=True)
    current_location = Column("current_location", String, nullable=True)
    tracking_last_checked = Column("tracking_last_checked", DateTime, nullable=True, index=True)
    last_tracking_update = Column("last_tracking_update", DateTime, nullable=True)
    tracking_error = Column("tracking_error", Text, nullable=True)
    tracking_failure_count = Column("tracking_failure_count", Integer, default=0, nullable=False)
    is_tracking_active = Column("is_tracking_active", Boolean, default=True, nullable=False, index=True)
    tracking_source = Column("tracking_source", String, nullable=True)
    tracking_data = Column("tracking_data", JSON, nullable=True)
    actual_delivery_date = Column("actual_delivery_date", DateTime, nullable=True)
    # Manual verification snapshot; never overwrites tracking_status
    partner_verified_status = Column("partner_verified_status", String, nullable=True)
    partner_verified_at = Column("partner_verified_at", DateTime, nullable=True)
    partner_verified_source = Column("partner_verified_source", String, nullable=True)
    partner_verified_raw = Column("partner_verified_raw", JSON, nullable=True)


# Models
class DropshipOrder(TrackingFieldsMixin, Base):
    __tablename__ = "dropship_orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    cust_order_no = Column("cust_order_no", String, nullable=False, index=True)
    status = Column("status", String, nullable=True)  # business status from the uploaded report
    fwd_carrier = Column("fwd_carrier", String, nullable=True)
    fwd_awb = Column("fwd_awb", String, nullable=True, index=True)
    seller_name = Column("seller_name", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class RtvReturn(TrackingFieldsMixin, Base):
    __tablename__ = "rtv_returns"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    return_id = Column("return_id", String, nullable=False, index=True)
    order_id = Column("order_id", String, nullable=True, index=True)
    status = Column("status", String, nullable=True)
    shipping_partner = Column("shipping_partner", String, nullable=True)
    tracking_number = Column("tracking_number", String, nullable=True, index=True)
    raw_row = Column("raw_row", JSON, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class TrackingHistory(Base):
    __tablename__ = "tracking_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_type = Column(SQLEnum(OwnerType), nullable=False)
    owner_id = Column("owner_id", String, nullable=False)
    timestamp = Column("timestamp", DateTime, nullable=False)
    status = Column("status", String, nullable=False)
    location = Column("location", String, nullable=True)
    remarks = Column("remarks", Text, nullable=True)
    source = Column("source", String, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    __table_args__ = (Index("ix_tracking_history_owner", "owner_type", "owner_id"),)

class TrackingLog(Base):
    """Append-only audit entry: one per fetch attempt or webhook push."""
    __tablename__ = "tracking_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    awb_number = Column("awb_number", String, nullable=False, index=True)
    courier = Column("courier", String, nullable=True)
    status = Column("status", String, nullable=True)
    original_status = Column("original_status", Text, nullable=True)
    current_location = Column("current_location", String, nullable=True)
    source = Column("source", String, nullable=False)
    response = Column("response", JSON, nullable=True)
    error = Column("error", Text, nullable=True)
    linked_order_id = Column("linked_order_id", String, nullable=True, index=True)
    linked_return_id = Column("linked_return_id", String, nullable=True, index=True)
    created_at = Column("created_at", DateTime, default=utc_now, nullable=False)

class CarrierCredential(Base):
    __tablename__ = "carrier_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    carrier_code = Column(SQLEnum(CarrierCode), unique=True, nullable=False)
    value_encrypted = Column("value_encrypted", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    trigger = Column("trigger", String, nullable=False, default="manual")
    live = Column("live", Boolean, nullable=False, default=True)
    status = Column(SQLEnum(SyncRunStatus), nullable=False, default=SyncRunStatus.RUNNING)
    records_processed = Column("records_processed", Integer, default=0, nullable=False)
    records_updated = Column("records_updated", Integer, default=0, nullable=False)
    records_failed = Column("records_failed", Integer, default=0, nullable=False)
    unresolved_carriers = Column("unresolved_carriers", JSON, nullable=True)
    error_message = Column("error_message", Text, nullable=True)
    started_at = Column("started_at", DateTime, default=utc_now, nullable=False)
    finished_at = Column("finished_at", DateTime, nullable=True)

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column("source", String, nullable=False, index=True)
    topic = Column("topic", String, nullable=False, index=True)
    payload_summary = Column("payload_summary", String, nullable=True)
    processed_at = Column("processed_at", DateTime, nullable=True)
    error = Column("error", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
