"""
Bounded-concurrency fan-out of carrier fetches.

Every shipment id in a batch is fetched at most once, under a per-carrier
concurrency limit and a per-item timeout. A failure is recorded on that
item's outcome only; the batch always completes.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from app.models import CarrierCode, OwnerType, utc_now
from app.services.carrier_adapter import (
    CarrierAdapter,
    FetchError,
    NetworkError,
    NotFoundError,
    ParseError,
    RawStatusPayload,
)

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    shipment_id: str
    carrier_code: Optional[CarrierCode]
    owner_type: OwnerType = OwnerType.ORDER
    checked_at: datetime = field(default_factory=utc_now)
    payload: Optional[RawStatusPayload] = None
    status: Optional[str] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{self.error.kind}: {self.error}"


def _unique(shipment_ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for shipment_id in shipment_ids:
        if shipment_id and shipment_id not in seen:
            seen.add(shipment_id)
            ordered.append(shipment_id)
    return ordered


async def fetch_one(
    adapter: CarrierAdapter,
    shipment_id: str,
    owner_type: OwnerType = OwnerType.ORDER,
    timeout: Optional[float] = None,
) -> FetchOutcome:
    """
    Fetch and classify one shipment; never raises.
    A payload with no status (scraped "not found" or unrecognised page) is a
    NotFoundError outcome, so it never overwrites a known status.
    """
    outcome = FetchOutcome(shipment_id=shipment_id, carrier_code=adapter.code, owner_type=owner_type)
    try:
        payload = await asyncio.wait_for(adapter.fetch(shipment_id), timeout=timeout or adapter.timeout)
        outcome.payload = payload
        if not payload.has_status:
            raise NotFoundError(
                f"{payload.remarks or 'No tracking status'} ({payload.extracted_by})",
                snippet=payload.markup,
            )
        outcome.status = adapter.classify(payload, owner_type).value
    except asyncio.TimeoutError:
        outcome.error = NetworkError(f"Timed out after {timeout or adapter.timeout}s")
    except FetchError as e:
        outcome.error = e
    except Exception as e:
        logger.exception("Unexpected error fetching %s awb=%s", getattr(adapter.code, "value", adapter.code), shipment_id)
        outcome.error = ParseError(f"Unexpected error: {e}")
    outcome.checked_at = utc_now()
    return outcome


async def run_batch(
    shipment_ids: Iterable[str],
    adapter: CarrierAdapter,
    concurrency_limit: Optional[int] = None,
    owner_type: OwnerType = OwnerType.ORDER,
    timeout: Optional[float] = None,
) -> List[FetchOutcome]:
    """
    Fetch every id through the adapter with at most concurrency_limit in flight.
    Returns one outcome per unique id, in input order, once all have finished.
    """
    ids = _unique(shipment_ids)
    if not ids:
        return []
    limit = concurrency_limit or adapter.concurrency_limit
    if limit < 1:
        raise ValueError(f"concurrency_limit must be >= 1, got {limit}")
    semaphore = asyncio.Semaphore(limit)

    async def _bounded(shipment_id: str) -> FetchOutcome:
        async with semaphore:
            return await fetch_one(adapter, shipment_id, owner_type=owner_type, timeout=timeout)

    outcomes = await asyncio.gather(*(_bounded(shipment_id) for shipment_id in ids))
    failed = sum(1 for o in outcomes if not o.ok)
    logger.debug(
        "Fetched %s %s shipment(s): %s ok, %s failed",
        len(outcomes), getattr(adapter.code, "value", adapter.code), len(outcomes) - failed, failed,
    )
    return list(outcomes)
