"""
HTTP API tests - tracking, webhooks, carriers and sync endpoints through FastAPI's TestClient
"""
import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.models import DropshipOrder, WebhookEvent
from main import app

SCRAPE_PATCH = "app.services.html_scrape_adapter.get_with_retry"

DELIVERED_PAGE = "<html><body><p>Current Status: Delivered</p><p>Location: Customer Door</p></body></html>"


@pytest.fixture
def client(db_session):
    with TestClient(app) as test_client:
        yield test_client


def _page(text):
    return httpx.Response(200, text=text, request=httpx.Request("GET", "https://www.delhivery.com"))


def _sign(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["db"] == "ok"
        assert data["scheduler"] == "stopped"


class TestTrackingEndpoints:
    def test_unknown_awb_is_404(self, client):
        assert client.get("/api/track/NOPE123").status_code == 404
        assert client.get("/api/track/NOPE123/state").status_code == 404

    def test_unresolved_carrier_is_422(self, client, make_order):
        make_order(awb="U1", carrier="UnknownCarrierXYZ")
        assert client.get("/api/track/U1").status_code == 422

    def test_track_single_refreshes_record(self, client, db_session, make_order):
        make_order(awb="D1")
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=_page(DELIVERED_PAGE))):
            response = client.get("/api/track/D1")

        assert response.status_code == 200
        record = response.json()["records"][0]
        assert record["trackingStatus"] == "delivered"
        assert record["currentLocation"] == "Customer Door"
        assert record["fetchOk"] is True
        assert record["trackingSource"] == "html-scrape"

        logs = client.get("/api/track/D1/logs").json()
        assert len(logs) == 1
        assert logs[0]["source"] == "html-scrape"

    def test_manual_verify_keeps_system_status(self, client, db_session, make_order):
        make_order(awb="D1", tracking_status="in_transit")
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=_page(DELIVERED_PAGE))):
            response = client.get("/api/track/manual-verify/D1")

        assert response.status_code == 200
        data = response.json()
        assert data["systemStatus"] == "in_transit"
        assert data["partnerStatus"] == "Delivered"
        assert data["partnerCanonicalStatus"] == "delivered"
        assert data["matched"] is False

        summary = client.get("/api/track/verify-summary/D1").json()
        assert summary["partnerStatus"] == "Delivered"
        assert summary["systemStatus"] == "in_transit"
        db_session.expire_all()
        assert db_session.query(DropshipOrder).one().tracking_status == "in_transit"

    def test_batch_reports_missing_awbs(self, client, make_order):
        make_order(awb="D1")
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=_page(DELIVERED_PAGE))):
            response = client.post("/api/track/batch", json={"awbs": ["D1", "MISSING"]})
        assert response.status_code == 200
        results = response.json()["results"]
        assert results["MISSING"] == {"error": "not_found"}
        assert results["D1"]["records"][0]["trackingStatus"] == "delivered"

    def test_batch_shared_awb_reports_every_record(self, client, db_session, make_order, make_return):
        make_order(awb="SH1", carrier="Delhivery")
        make_return(awb="SH1", carrier="SomeUnknownCourier")
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=_page(DELIVERED_PAGE))):
            response = client.post("/api/track/batch", json={"awbs": ["SH1"]})

        assert response.status_code == 200
        entry = response.json()["results"]["SH1"]
        records = {r["ownerType"]: r for r in entry["records"]}
        assert records["ORDER"]["trackingStatus"] == "delivered"
        assert records["ORDER"]["fetchOk"] is True
        assert records["RETURN"]["fetchOk"] is False
        assert records["RETURN"]["error"] == "unresolved carrier: SomeUnknownCourier"
        assert entry["errors"] == [{
            "ownerType": "RETURN",
            "ownerId": records["RETURN"]["ownerId"],
            "error": "unresolved carrier: SomeUnknownCourier",
        }]

    def test_single_shared_awb_reports_unresolved_record_in_place(self, client, db_session, make_order, make_return):
        make_order(awb="SH1", carrier="Delhivery")
        make_return(awb="SH1", carrier="SomeUnknownCourier")
        with patch(SCRAPE_PATCH, new=AsyncMock(return_value=_page(DELIVERED_PAGE))):
            response = client.get("/api/track/SH1")

        assert response.status_code == 200
        records = {r["ownerType"]: r for r in response.json()["records"]}
        assert records["ORDER"]["trackingStatus"] == "delivered"
        assert records["RETURN"]["fetchOk"] is False
        assert records["RETURN"]["error"] == "unresolved carrier: SomeUnknownCourier"
        assert records["RETURN"]["trackingStatus"] == "initiated"

    def test_batch_limit(self, client):
        awbs = [f"A{i}" for i in range(settings.TRACK_BATCH_MAX + 1)]
        assert client.post("/api/track/batch", json={"awbs": awbs}).status_code == 400

    def test_reset(self, client, make_order):
        make_order(awb="D1", is_tracking_active=False, tracking_failure_count=4)
        record = client.post("/api/track/D1/reset").json()["records"][0]
        assert record["isTrackingActive"] is True
        assert record["failureCount"] == 0


class TestWebhookEndpoints:
    def test_status_push(self, client, make_order):
        make_order(awb="D1")
        response = client.post(
            "/api/webhooks/update-status",
            json={"awb": "D1", "status": "Out for Delivery", "location": "Pune"},
        )
        assert response.status_code == 200
        assert response.json() == {"awb": "D1", "matched": 1, "changed": 1}
        state = client.get("/api/track/D1/state").json()["records"][0]
        assert state["trackingStatus"] == "out_for_delivery"
        assert state["trackingSource"] == "webhook"

    def test_status_push_unknown_awb(self, client):
        response = client.post("/api/webhooks/update-status", json={"awb": "NOPE", "status": "Delivered"})
        assert response.status_code == 404

    def test_signed_carrier_webhook(self, client, db_session, make_order, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "shh")
        make_order(awb="D1")
        body = json.dumps({"event_type": "status_update", "waybill": "D1", "status": "Delivered",
                           "timestamp": "2024-05-02T10:15:00Z"}).encode("utf-8")

        bad = client.post("/api/webhooks/delhivery", content=body, headers={"X-Webhook-Signature": "wrong"})
        assert bad.status_code == 401

        ok = client.post("/api/webhooks/delhivery", content=body, headers={"X-Webhook-Signature": _sign(body, "shh")})
        assert ok.status_code == 200
        assert ok.json()["ok"] is True
        db_session.expire_all()
        order = db_session.query(DropshipOrder).one()
        assert order.tracking_status == "delivered"
        assert db_session.query(WebhookEvent).filter_by(source="delhivery").count() == 1

    def test_webhook_missing_waybill(self, client):
        response = client.post("/api/webhooks/delhivery", json={"status": "Delivered"})
        assert response.status_code == 400

    def test_unknown_carrier_webhook(self, client):
        assert client.post("/api/webhooks/pigeonpost", json={"waybill": "X"}).status_code == 404


class TestCarrierAndSyncEndpoints:
    def test_resolve(self, client):
        assert client.get("/api/carriers/resolve", params={"name": "Ecom Express"}).json()["carrier"] == "ECOM"
        assert client.get("/api/carriers/resolve", params={"name": "Pigeon"}).json()["resolved"] is False

    def test_list_carriers(self, client):
        carriers = {c["carrier"]: c for c in client.get("/api/carriers").json()}
        assert carriers["DELHIVERY"]["strategy"] == "html-scrape"
        assert carriers["FEDEX"]["concurrencyLimit"] == 3

    def test_store_credentials_switches_strategy(self, client):
        response = client.put("/api/carriers/delhivery/credentials", json={"apiKey": "k-123"})
        assert response.status_code == 200
        carriers = {c["carrier"]: c for c in client.get("/api/carriers").json()}
        assert carriers["DELHIVERY"]["strategy"] == "token-api"

    def test_local_sync_run(self, client, make_order):
        make_order(awb="D1", status="Delivered")
        response = client.post("/api/sync/run", json={"live": False})
        assert response.status_code == 200
        data = response.json()
        assert data["live"] is False
        assert data["processed"] == 1
        runs = client.get("/api/sync/runs").json()
        assert runs[0]["status"] == "COMPLETED"
        assert client.get("/api/sync/status").json()["inProgress"] is False
