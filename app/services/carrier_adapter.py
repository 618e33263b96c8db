"""
Carrier adapter contract, raw payload type and fetch errors.

An adapter knows how to get the current status of one shipment from one
carrier (token API or public tracking page) and how to classify it.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.models import OwnerType, TrackingSource, utc_now
from app.services.status_taxonomy import classify_status

SNIPPET_LENGTH = 2000

# extracted_by values for pages that carried no shipment status
STATUSLESS_EXTRACTIONS = ("not-found", "unknown")


class CarrierUnresolvedError(ValueError):
    """No adapter matches the carrier name on the record."""

    def __init__(self, carrier_text: Optional[str]):
        self.carrier_text = carrier_text
        super().__init__(f"Unresolved carrier: {carrier_text!r}")


class FetchError(Exception):
    """Base class for per-shipment fetch failures."""

    kind = "fetch_error"

    def __init__(self, message: str, snippet: Optional[str] = None):
        super().__init__(message)
        self.snippet = snippet[:SNIPPET_LENGTH] if snippet else None


class NotFoundError(FetchError):
    """Carrier explicitly has no data for the shipment id."""

    kind = "not_found"


class NetworkError(FetchError):
    """Transport failure, timeout or carrier-side 5xx. Transient."""

    kind = "network"


class ParseError(FetchError):
    """Response arrived but could not be understood."""

    kind = "parse"


@dataclass
class RawStatusPayload:
    source: TrackingSource
    fetched_at: datetime = field(default_factory=utc_now)
    status_text: str = ""
    location: Optional[str] = None
    status_time: Optional[str] = None
    remarks: Optional[str] = None
    history: list = field(default_factory=list)
    body: Any = None
    markup: Optional[str] = None
    byte_length: Optional[int] = None
    extracted_by: Optional[str] = None

    @property
    def has_status(self) -> bool:
        return self.extracted_by not in STATUSLESS_EXTRACTIONS

    def summary(self) -> dict:
        """Small JSON-safe view stored on the record and in the audit log."""
        data = {
            "source": self.source.value,
            "fetchedAt": self.fetched_at.isoformat(),
            "statusText": self.status_text,
            "location": self.location,
            "statusTime": self.status_time,
            "remarks": self.remarks,
            "scanCount": len(self.history),
        }
        if self.extracted_by:
            data["extractedBy"] = self.extracted_by
        if self.markup is not None:
            data["htmlLength"] = self.byte_length
            data["snippet"] = self.markup[:SNIPPET_LENGTH]
        return data


class CarrierAdapter:
    """
    Base adapter. Subclasses implement fetch(); classification is shared.

    fetch() returns a RawStatusPayload or raises NotFoundError, NetworkError
    or ParseError.
    """

    code = None
    strategy = None
    concurrency_limit = 5
    batch_size = 25
    timeout = 15.0

    async def fetch(self, shipment_id: str) -> RawStatusPayload:
        raise NotImplementedError

    def classify(self, payload: RawStatusPayload, owner_type: OwnerType):
        return classify_status(payload.status_text, owner_type)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} code={getattr(self.code, 'value', self.code)} strategy={self.strategy}>"
