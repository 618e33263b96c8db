"""
Shared fixtures: in-memory SQLite database, record factories and a scripted carrier adapter.
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import Generator

# Must be set before anything imports app.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SYNC_ENABLED"] = "false"
os.environ["DELHIVERY_API_KEY"] = ""
os.environ["WEBHOOK_SECRET"] = ""
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-0123456789ab"
os.environ["LOG_LEVEL"] = "WARNING"

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
from sqlalchemy.orm import Session

from app.database import Base, SessionLocal, engine
from app.models import CarrierCode, DropshipOrder, RtvReturn, TrackingSource
from app.services.carrier_adapter import CarrierAdapter, RawStatusPayload


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Fresh schema per test on the shared in-memory engine."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_order(db_session):
    def _make(awb="AWB1", carrier="Delhivery", status="Shipped", **fields):
        order = DropshipOrder(
            cust_order_no=fields.pop("cust_order_no", f"CO-{awb}"),
            status=status,
            fwd_carrier=carrier,
            fwd_awb=awb,
            tracking_status=fields.pop("tracking_status", "pending"),
            **fields,
        )
        db_session.add(order)
        db_session.commit()
        return order
    return _make


@pytest.fixture
def make_return(db_session):
    def _make(awb="RAWB1", carrier="Shadowfax", status="Return Initiated", raw_row=None, **fields):
        rtv = RtvReturn(
            return_id=fields.pop("return_id", f"RT-{awb}"),
            order_id=fields.pop("order_id", None),
            status=status,
            shipping_partner=carrier,
            tracking_number=awb,
            raw_row=raw_row or {},
            tracking_status=fields.pop("tracking_status", "initiated"),
            **fields,
        )
        db_session.add(rtv)
        db_session.commit()
        return rtv
    return _make


class StubAdapter(CarrierAdapter):
    """
    Scripted adapter. responses maps shipment id -> status text or FetchError
    instance; delays maps shipment id -> seconds to sleep before answering.
    """

    strategy = "stub"

    def __init__(self, code=CarrierCode.DELHIVERY, responses=None, default="In Transit",
                 delays=None, concurrency_limit=5, batch_size=25, timeout=5.0, on_fetch=None):
        self.code = code
        self.responses = responses or {}
        self.default = default
        self.delays = delays or {}
        self.concurrency_limit = concurrency_limit
        self.batch_size = batch_size
        self.timeout = timeout
        self.on_fetch = on_fetch
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, shipment_id):
        self.calls.append(shipment_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_fetch is not None:
                self.on_fetch(shipment_id)
            delay = self.delays.get(shipment_id, 0)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            response = self.responses.get(shipment_id, self.default)
            if isinstance(response, Exception):
                raise response
            return RawStatusPayload(source=TrackingSource.API, status_text=response, location="Test Hub")
        finally:
            self.in_flight -= 1


@pytest.fixture
def stub_adapter():
    return StubAdapter
