"""
Record store and updater tests - success/failure writes, idempotence, deactivation, audit trail
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.models import (
    CarrierCode,
    OrderTrackingStatus,
    OwnerType,
    TrackingHistory,
    TrackingLog,
    TrackingSource,
    utc_now,
)
from app.services.carrier_adapter import NetworkError, RawStatusPayload
from app.services.fetch_executor import FetchOutcome, fetch_one
from app.services.html_scrape_adapter import SCRAPE_PROFILES, HtmlScrapeAdapter
from app.services.record_store import TrackingRecordStore
from app.services.record_updater import RecordUpdater

SCRAPE_PATCH = "app.services.html_scrape_adapter.get_with_retry"


def _success(ref, status_text="Out for Delivery", status="out_for_delivery", location="Pune Hub", checked_at=None):
    return FetchOutcome(
        shipment_id=ref.shipment_id,
        carrier_code=CarrierCode.DELHIVERY,
        owner_type=ref.owner_type,
        checked_at=checked_at or utc_now(),
        payload=RawStatusPayload(source=TrackingSource.API, status_text=status_text, location=location),
        status=status,
    )


def _failure(ref, message="connection reset", checked_at=None):
    return FetchOutcome(
        shipment_id=ref.shipment_id,
        carrier_code=CarrierCode.DELHIVERY,
        owner_type=ref.owner_type,
        checked_at=checked_at or utc_now(),
        error=NetworkError(message),
    )


@pytest.fixture
def store(db_session):
    return TrackingRecordStore(db_session)


@pytest.fixture
def updater(store):
    return RecordUpdater(store, failure_threshold=3)


class TestRecordStore:
    def test_refs_skip_blank_shipment_ids(self, store, make_order):
        make_order(awb="A1")
        make_order(awb="", cust_order_no="CO-blank")
        make_order(awb=None, cust_order_no="CO-none")
        refs = list(store.iter_shipment_refs(OwnerType.ORDER))
        assert [r.shipment_id for r in refs] == ["A1"]

    def test_pagination_visits_every_record_once(self, store, make_order):
        for i in range(7):
            make_order(awb=f"P{i}")
        refs = list(store.iter_shipment_refs(OwnerType.ORDER, page_size=3))
        assert sorted(r.shipment_id for r in refs) == [f"P{i}" for i in range(7)]

    def test_invalid_page_size(self, store):
        with pytest.raises(ValueError):
            list(store.iter_shipment_refs(OwnerType.ORDER, page_size=0))

    def test_needing_update_respects_staleness_and_active_flag(self, store, make_order):
        make_order(awb="FRESH", tracking_last_checked=utc_now())
        make_order(awb="STALE", tracking_last_checked=utc_now() - timedelta(hours=2))
        make_order(awb="NEVER")
        make_order(awb="OFF", is_tracking_active=False)
        refs = store.find_shipments_needing_update(OwnerType.ORDER, timedelta(minutes=30))
        assert sorted(r.shipment_id for r in refs) == ["NEVER", "STALE"]

    def test_needing_update_limit(self, store, make_order):
        for i in range(5):
            make_order(awb=f"L{i}")
        refs = list(store.find_shipments_needing_update(OwnerType.ORDER, timedelta(minutes=30), limit=2, page_size=1))
        assert len(refs) == 2

    def test_find_refs_by_awb_spans_orders_and_returns(self, store, make_order, make_return):
        make_order(awb="SHARED")
        make_return(awb="SHARED")
        refs = store.find_refs_by_awb(" SHARED ")
        assert {r.owner_type for r in refs} == {OwnerType.ORDER, OwnerType.RETURN}

    def test_non_tracking_field_rejected(self, store, make_order):
        make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        with pytest.raises(ValueError):
            store.update_tracking_fields(ref, {"status": "Cancelled"})


class TestRecordUpdaterSuccess:
    def test_success_overwrites_tracking_fields(self, db_session, store, updater, make_order):
        order = make_order(awb="A1", tracking_error="old", tracking_failure_count=2)
        ref = store.find_refs_by_awb("A1")[0]
        outcome = _success(ref)

        assert updater.apply(ref, outcome) is True
        db_session.refresh(order)
        assert order.tracking_status == OrderTrackingStatus.OUT_FOR_DELIVERY.value
        assert order.current_location == "Pune Hub"
        assert order.tracking_last_checked == outcome.checked_at
        assert order.last_tracking_update == outcome.checked_at
        assert order.tracking_error is None
        assert order.tracking_failure_count == 0
        assert order.tracking_source == "api"
        assert order.tracking_data["statusText"] == "Out for Delivery"
        assert order.status == "Shipped"

    def test_reapplying_same_outcome_is_idempotent(self, db_session, store, updater, make_order):
        make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        outcome = _success(ref)
        updater.apply(ref, outcome)
        assert updater.apply(ref, outcome) is False
        history = db_session.query(TrackingHistory).filter_by(owner_id=ref.owner_id).all()
        assert len(history) == 1

    def test_delivery_date_set_once(self, db_session, store, updater, make_order):
        order = make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        first = _success(ref, "Delivered", "delivered")
        updater.apply(ref, first)
        updater.apply(ref, _success(ref, "Delivered", "delivered", checked_at=first.checked_at + timedelta(hours=1)))
        db_session.refresh(order)
        assert order.actual_delivery_date == first.checked_at

    def test_success_after_failures_reactivates(self, db_session, store, updater, make_order):
        order = make_order(awb="A1", tracking_failure_count=3, is_tracking_active=False, tracking_error="x")
        ref = store.find_refs_by_awb("A1")[0]
        updater.apply(ref, _success(ref))
        db_session.refresh(order)
        assert order.is_tracking_active is True
        assert order.tracking_failure_count == 0


class TestRecordUpdaterFailure:
    def test_failure_keeps_status_and_counts(self, db_session, store, updater, make_order):
        order = make_order(awb="A1", tracking_status="in_transit")
        ref = store.find_refs_by_awb("A1")[0]
        outcome = _failure(ref)
        assert updater.apply(ref, outcome) is False
        db_session.refresh(order)
        assert order.tracking_status == "in_transit"
        assert order.tracking_failure_count == 1
        assert order.tracking_error == "network: connection reset"
        assert order.tracking_last_checked == outcome.checked_at

    def test_same_failure_applied_twice_counts_once(self, db_session, store, updater, make_order):
        order = make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        outcome = _failure(ref)
        updater.apply(ref, outcome)
        updater.apply(ref, outcome)
        db_session.refresh(order)
        assert order.tracking_failure_count == 1

    def test_deactivates_at_threshold(self, db_session, store, updater, make_order):
        order = make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        start = utc_now()
        for i in range(3):
            updater.apply(ref, _failure(ref, checked_at=start + timedelta(seconds=i)))
        db_session.refresh(order)
        assert order.tracking_failure_count == 3
        assert order.is_tracking_active is False

    def test_reset_tracking(self, db_session, store, updater, make_order):
        order = make_order(awb="A1", tracking_failure_count=5, is_tracking_active=False, tracking_error="x")
        updater.reset_tracking(store.find_refs_by_awb("A1")[0])
        db_session.refresh(order)
        assert order.is_tracking_active is True
        assert order.tracking_failure_count == 0
        assert order.tracking_error is None

    def test_threshold_must_be_positive(self, store):
        with pytest.raises(ValueError):
            RecordUpdater(store, failure_threshold=-1)


class TestAuditAndSnapshots:
    def test_every_attempt_writes_one_audit_entry(self, db_session, store, updater, make_order):
        make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        updater.apply(ref, _success(ref))
        updater.apply(ref, _failure(ref))
        entries = db_session.query(TrackingLog).filter_by(awb_number="A1").all()
        assert len(entries) == 2
        assert {e.linked_order_id for e in entries} == {ref.owner_id}
        assert sum(1 for e in entries if e.error) == 1

    def test_partner_snapshot_does_not_touch_system_status(self, db_session, store, updater, make_order):
        order = make_order(awb="A1", tracking_status="in_transit")
        ref = store.find_refs_by_awb("A1")[0]
        updater.apply_partner_snapshot(ref, _success(ref, "Delivered", "delivered"))
        db_session.refresh(order)
        assert order.tracking_status == "in_transit"
        assert order.partner_verified_status == "Delivered"
        assert order.partner_verified_source == "api"
        entry = db_session.query(TrackingLog).filter_by(awb_number="A1").one()
        assert entry.source == "manual-verify:api"

    def test_heuristic_sets_source(self, db_session, store, updater, make_order):
        order = make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        assert updater.apply_heuristic(ref, OrderTrackingStatus.IN_TRANSIT) is True
        assert updater.apply_heuristic(ref, OrderTrackingStatus.IN_TRANSIT) is False
        db_session.refresh(order)
        assert order.tracking_source == TrackingSource.HEURISTIC.value
        assert db_session.query(TrackingLog).count() == 0

    def test_push_uses_webhook_source(self, db_session, store, updater, make_order):
        order = make_order(awb="A1")
        ref = store.find_refs_by_awb("A1")[0]
        assert updater.apply_push(ref, "Delivered", location="Customer door") is True
        db_session.refresh(order)
        assert order.tracking_status == "delivered"
        assert order.tracking_source == "webhook"
        assert order.actual_delivery_date is not None


def _page(status_code=200, text=""):
    return httpx.Response(status_code, text=text, request=httpx.Request("GET", "https://shadowfax.in/track/SF1"))


class TestScrapedPagesToRecord:
    """Carrier page through fetch_one and the updater onto a record that already has a status."""

    @pytest.fixture
    def adapter(self):
        return HtmlScrapeAdapter(SCRAPE_PROFILES[CarrierCode.SHADOWFAX], max_retries=0)

    async def _refresh(self, adapter, updater, ref, response):
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=response)):
            outcome = await fetch_one(adapter, ref.shipment_id, owner_type=ref.owner_type)
        updater.apply(ref, outcome)
        return outcome

    @pytest.mark.parametrize("response", [
        _page(text="<html><body><h2>AWB not found</h2></body></html>"),
        _page(text="<html><body><h1>Track your parcel</h1></body></html>"),
        _page(404, text="gone"),
    ], ids=["not-found-page", "unrecognised-page", "client-error"])
    async def test_statusless_page_keeps_status_and_counts_failures(
        self, db_session, store, adapter, make_order, response
    ):
        order = make_order(awb="SF1", carrier="Shadowfax", tracking_status="delivered")
        ref = store.find_refs_by_awb("SF1")[0]
        updater = RecordUpdater(store, failure_threshold=2)

        first = await self._refresh(adapter, updater, ref, response)
        await self._refresh(adapter, updater, ref, response)

        assert first.ok is False
        db_session.refresh(order)
        assert order.tracking_status == "delivered"
        assert order.tracking_error.startswith("not_found:")
        assert order.tracking_failure_count == 2
        assert order.is_tracking_active is False
        entries = db_session.query(TrackingLog).filter_by(awb_number="SF1").all()
        assert len(entries) == 2
        assert all(e.source == "html-scrape" for e in entries)

    async def test_status_next_to_unrelated_invalid_wording_is_applied(self, db_session, store, adapter, make_order):
        order = make_order(awb="SF1", carrier="Shadowfax", tracking_status="in_transit")
        ref = store.find_refs_by_awb("SF1")[0]
        page = "<html><body><div class='status'>Delivered</div><footer>invalid email address</footer></body></html>"

        outcome = await self._refresh(adapter, RecordUpdater(store, failure_threshold=2), ref, _page(text=page))

        assert outcome.ok is True
        db_session.refresh(order)
        assert order.tracking_status == "delivered"
        assert order.tracking_failure_count == 0
        assert order.is_tracking_active is True
