"""
Token-authenticated carrier tracking APIs.

Delhivery: GET {base}/api/v1/packages/json/?waybill=XXXX
Authorization: Token <API_KEY>

The same endpoint has been seen returning several response shapes; they are
probed in a fixed order and the first structurally valid one wins.
"""
import logging
from typing import Any, Callable, List, Optional, Tuple

import httpx

from app.config import settings
from app.models import CarrierCode, TrackingSource
from app.services.carrier_adapter import (
    CarrierAdapter,
    NetworkError,
    NotFoundError,
    ParseError,
    RawStatusPayload,
)
from app.services.http_client import get_with_retry

logger = logging.getLogger(__name__)

NO_DATA_REMARK = "data does not exists"


def _list_at(key: str) -> Callable[[Any], Optional[list]]:
    def matcher(data: Any) -> Optional[list]:
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return data[key]
        return None
    matcher.__name__ = f"key:{key}"
    return matcher


def _array_root(data: Any) -> Optional[list]:
    return data if isinstance(data, list) else None


# Probe order matters: first structurally valid shape wins.
SHAPE_MATCHERS: List[Tuple[str, Callable[[Any], Optional[list]]]] = [
    ("array", _array_root),
    ("shipments", _list_at("shipments")),
    ("data", _list_at("data")),
    ("packages", _list_at("packages")),
    ("ShipmentData", _list_at("ShipmentData")),
    ("shipmentData", _list_at("shipmentData")),
]


def match_shape(data: Any) -> Optional[Tuple[str, list]]:
    """Return (shape name, shipment list) for the first matching shape, or None."""
    for name, matcher in SHAPE_MATCHERS:
        shipments = matcher(data)
        if shipments is not None:
            return name, shipments
    return None


def is_no_data_response(data: Any) -> bool:
    """Carrier's explicit 'no such waybill' markers."""
    if not isinstance(data, dict):
        return False
    if data.get("Error"):
        return True
    remark = data.get("rmk")
    return isinstance(remark, str) and NO_DATA_REMARK in remark.lower()


def _first(data: dict, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _scan_entry(scan: Any) -> Optional[dict]:
    if not isinstance(scan, dict):
        return None
    detail = scan.get("ScanDetail") if isinstance(scan.get("ScanDetail"), dict) else scan
    status = _first(detail, "Scan", "Status", "status", "scanStatus")
    if not status:
        return None
    return {
        "timestamp": _first(detail, "ScanDateTime", "Scan_Date", "scanDate", "timestamp"),
        "status": str(status),
        "location": _first(detail, "ScannedLocation", "Scan_Location", "scanLocation", "location"),
        "remarks": _first(detail, "Instructions", "Remarks", "remarks", "description"),
    }


def parse_shipment(item: Any) -> dict:
    """Extract status, location, time and scans from one shipment entry."""
    if not isinstance(item, dict):
        raise ValueError("shipment entry is not an object")
    shipment = item.get("Shipment") or item.get("shipment") or item
    if not isinstance(shipment, dict):
        raise ValueError("Shipment is not an object")

    status_block = shipment.get("Status") or shipment.get("status")
    location = None
    status_time = None
    remarks = None
    if isinstance(status_block, dict):
        status_text = _first(status_block, "Status", "status") or ""
        location = _first(status_block, "StatusLocation", "Location", "location")
        status_time = _first(status_block, "StatusDateTime", "StatusDate", "timestamp")
        remarks = _first(status_block, "Instructions", "Remarks")
    else:
        status_text = status_block or _first(shipment, "currentStatus", "deliveryStatus") or ""

    location = location or _first(shipment, "Current_Status_Location", "currentLocation", "currentStatusLocation", "location")
    scans_raw = _first(shipment, "Scans", "scans", "Scan", "trackingHistory") or []
    history = []
    if isinstance(scans_raw, list):
        history = [entry for entry in (_scan_entry(s) for s in scans_raw) if entry]

    return {
        "awb": _first(shipment, "AWB", "waybill", "trackingNumber", "waybillNo"),
        "status_text": str(status_text),
        "location": str(location) if location is not None else None,
        "status_time": str(status_time) if status_time is not None else None,
        "remarks": str(remarks) if remarks is not None else None,
        "history": history,
    }


class TokenApiAdapter(CarrierAdapter):
    """Generic 'GET endpoint with Authorization: Token <key>' tracking API."""

    strategy = "token-api"

    def __init__(
        self,
        code: CarrierCode,
        api_key: str,
        base_url: str,
        path: str,
        waybill_param: str = "waybill",
        concurrency_limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.code = code
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.waybill_param = waybill_param
        self.concurrency_limit = concurrency_limit or settings.API_CONCURRENCY
        self.batch_size = batch_size or settings.API_BATCH_SIZE
        self.timeout = timeout or settings.TRACKING_HTTP_TIMEOUT
        self.max_retries = settings.TRACKING_HTTP_RETRIES if max_retries is None else max_retries

    async def _get_json(self, shipment_id: str) -> Any:
        url = f"{self.base_url}{self.path}"
        params = {self.waybill_param: shipment_id}
        headers = {"Authorization": f"Token {self.api_key}", "Accept": "application/json"}
        try:
            resp = await get_with_retry(
                url, params=params, headers=headers, timeout=self.timeout, max_retries=self.max_retries
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"{self.code.value} API timeout: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{self.code.value} API transport error: {e}") from e

        if resp.status_code == 404:
            raise NotFoundError(f"HTTP 404 for waybill {shipment_id}", snippet=resp.text)
        if resp.status_code in (401, 403):
            raise NetworkError(f"HTTP {resp.status_code}: {self.code.value} API rejected the token", snippet=resp.text)
        if resp.status_code >= 400:
            raise NetworkError(f"HTTP {resp.status_code}", snippet=resp.text)
        try:
            return resp.json()
        except ValueError as e:
            logger.warning("%s API returned non-JSON for waybill=%s: %s", self.code.value, shipment_id, resp.text[:200])
            raise ParseError("Response is not JSON", snippet=resp.text) from e

    async def _fetch_api(self, shipment_id: str) -> Optional[RawStatusPayload]:
        """Payload for the waybill, or None when the carrier reports no data."""
        data = await self._get_json(shipment_id)
        if is_no_data_response(data):
            logger.info("%s has no data for waybill=%s", self.code.value, shipment_id)
            return None

        matched = match_shape(data)
        if matched is None:
            snippet = str(data)[:500]
            logger.warning("%s API unrecognized response shape waybill=%s: %s", self.code.value, shipment_id, snippet)
            raise ParseError("Unrecognized response shape", snippet=snippet)
        shape, shipments = matched
        if not shipments:
            return None

        try:
            parsed = parse_shipment(shipments[0])
        except (ValueError, TypeError, AttributeError) as e:
            snippet = str(shipments[0])[:500]
            logger.warning("%s API could not parse shipment waybill=%s: %s", self.code.value, shipment_id, snippet)
            raise ParseError(f"Could not parse shipment: {e}", snippet=snippet) from e

        return RawStatusPayload(
            source=TrackingSource.API,
            status_text=parsed["status_text"],
            location=parsed["location"],
            status_time=parsed["status_time"],
            remarks=parsed["remarks"],
            history=parsed["history"],
            body=data,
            extracted_by=f"shape:{shape}",
        )

    async def fetch(self, shipment_id: str) -> RawStatusPayload:
        payload = await self._fetch_api(shipment_id)
        if payload is None:
            raise NotFoundError(f"No tracking data for waybill {shipment_id}")
        return payload


class DelhiveryApiAdapter(TokenApiAdapter):
    """Delhivery packages API."""

    def __init__(self, api_key: str, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(
            code=CarrierCode.DELHIVERY,
            api_key=api_key,
            base_url=base_url or settings.DELHIVERY_TRACKING_BASE_URL,
            path="/api/v1/packages/json/",
            **kwargs,
        )
