"""
Reconciliation sync: bring the tracking status of every order and return in
line with what its carrier currently reports.

Records are streamed page by page, grouped per carrier into batches no larger
than the carrier's batch size, fetched through the executor and written
through the record updater. Each batch is committed on its own, so a crash
mid-run keeps the work already done.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.models import CarrierCode, OwnerType, SyncRun, SyncRunStatus, utc_now
from app.services.carrier_adapter import CarrierAdapter
from app.services.carrier_registry import CarrierRegistry, build_registry
from app.services.fetch_executor import run_batch
from app.services.record_store import RecordNotFoundError, ShipmentReference, TrackingRecordStore
from app.services.record_updater import RecordUpdater
from app.services.status_taxonomy import derive_local_order_status, derive_local_return_status

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class SyncResult:
    live: bool
    trigger: str
    run_id: Optional[str] = None
    processed: int = 0
    updated_count: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unresolved: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "live": self.live,
            "trigger": self.trigger,
            "processed": self.processed,
            "updatedCount": self.updated_count,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unresolvedCarriers": self.unresolved,
            "cancelled": self.cancelled,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class ReconciliationOrchestrator:
    """Runs one reconciliation pass at a time over orders and returns."""

    def __init__(
        self,
        db: Session,
        registry: Optional[CarrierRegistry] = None,
        updater: Optional[RecordUpdater] = None,
        page_size: Optional[int] = None,
    ):
        self.db = db
        self.store = TrackingRecordStore(db)
        self.registry = registry or build_registry(db)
        self.updater = updater or RecordUpdater(self.store)
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.state = SyncState.IDLE
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop at the next batch boundary; in-flight fetches finish."""
        if self.state == SyncState.RUNNING:
            logger.info("Stop requested for running reconciliation")
        self._stop_requested = True

    async def run_sync(
        self,
        live: bool = True,
        owner_types: Sequence[OwnerType] = (OwnerType.ORDER, OwnerType.RETURN),
        trigger: str = "manual",
        staleness: Optional[timedelta] = None,
    ) -> SyncResult:
        """
        One full pass. live=False derives status from fields already on each
        record instead of calling carriers. With staleness set, only active
        records not checked within that window are visited.
        """
        if self.state == SyncState.RUNNING:
            raise RuntimeError("Reconciliation already running")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")

        self.state = SyncState.RUNNING
        self._stop_requested = False
        result = SyncResult(live=live, trigger=trigger)
        run = SyncRun(trigger=trigger, live=live, status=SyncRunStatus.RUNNING, started_at=result.started_at)
        self.db.add(run)
        self.db.commit()
        result.run_id = run.id
        logger.info("Reconciliation %s started (live=%s, trigger=%s)", run.id, live, trigger)

        try:
            for owner_type in owner_types:
                if self._stop_requested:
                    break
                refs = self._refs(owner_type, live, staleness)
                if live:
                    await self._sync_live(owner_type, refs, result)
                else:
                    self._sync_local(owner_type, refs, result)
        except Exception as e:
            self.db.rollback()
            self.state = SyncState.FAILED
            result.finished_at = utc_now()
            self._finish_run(run.id, result, SyncRunStatus.FAILED, error=str(e))
            logger.exception("Reconciliation %s failed", run.id)
            raise

        result.cancelled = self._stop_requested
        result.finished_at = utc_now()
        self.state = SyncState.COMPLETED
        self._finish_run(run.id, result, SyncRunStatus.COMPLETED)
        logger.info(
            "Reconciliation %s finished: processed=%s updated=%s failed=%s unresolved=%s cancelled=%s",
            run.id, result.processed, result.updated_count, result.failed, sum(result.unresolved.values()), result.cancelled,
        )
        return result

    def _refs(self, owner_type: OwnerType, live: bool, staleness: Optional[timedelta]) -> Iterable[ShipmentReference]:
        if live and staleness is not None:
            return self.store.find_shipments_needing_update(owner_type, staleness, page_size=self.page_size)
        return self.store.iter_shipment_refs(owner_type, page_size=self.page_size, active_only=live)

    async def _sync_live(self, owner_type: OwnerType, refs: Iterable[ShipmentReference], result: SyncResult) -> None:
        buffers: Dict[CarrierCode, List[ShipmentReference]] = {}
        for ref in refs:
            if self._stop_requested:
                return
            adapter = self.registry.resolve(ref.carrier_text)
            if adapter is None:
                key = (ref.carrier_text or "").strip() or "<empty>"
                result.unresolved[key] = result.unresolved.get(key, 0) + 1
                result.skipped += 1
                logger.debug("Unresolved carrier %r for %s %s", ref.carrier_text, owner_type.value, ref.owner_id)
                continue
            buffer = buffers.setdefault(adapter.code, [])
            buffer.append(ref)
            if len(buffer) >= adapter.batch_size:
                await self._flush(adapter, owner_type, buffer, result)
                buffers[adapter.code] = []

        for code, buffer in buffers.items():
            if self._stop_requested:
                return
            if buffer:
                await self._flush(self.registry.get(code), owner_type, buffer, result)

    async def _flush(
        self,
        adapter: CarrierAdapter,
        owner_type: OwnerType,
        refs: List[ShipmentReference],
        result: SyncResult,
    ) -> None:
        if adapter.batch_size < 1:
            raise ValueError(f"{adapter.code.value} batch_size must be >= 1")
        outcomes = await run_batch([ref.shipment_id for ref in refs], adapter, owner_type=owner_type)
        by_id = {outcome.shipment_id: outcome for outcome in outcomes}
        for ref in refs:
            outcome = by_id[ref.shipment_id]
            result.processed += 1
            try:
                changed = self.updater.apply(ref, outcome)
            except RecordNotFoundError:
                # record deleted while the run was in progress
                result.skipped += 1
                continue
            if outcome.ok:
                result.updated_count += 1
                if changed:
                    result.changed += 1
            else:
                result.failed += 1
        self.db.commit()
        logger.debug("Committed %s batch of %s %s record(s)", adapter.code.value, len(refs), owner_type.value)

    def _sync_local(self, owner_type: OwnerType, refs: Iterable[ShipmentReference], result: SyncResult) -> None:
        pending = 0
        for ref in refs:
            if self._stop_requested:
                break
            if owner_type == OwnerType.RETURN:
                status = derive_local_return_status(ref.business_status, ref.shipment_id, ref.raw_row)
            else:
                status = derive_local_order_status(ref.business_status, ref.shipment_id)
            result.processed += 1
            if ref.carrier_code is None:
                key = (ref.carrier_text or "").strip() or "<empty>"
                result.unresolved[key] = result.unresolved.get(key, 0) + 1
            if self.updater.apply_heuristic(ref, status):
                result.updated_count += 1
                result.changed += 1
            pending += 1
            if pending >= self.page_size:
                self.db.commit()
                pending = 0
        self.db.commit()

    def _finish_run(self, run_id: str, result: SyncResult, status: SyncRunStatus, error: Optional[str] = None) -> None:
        run = self.db.get(SyncRun, run_id)
        if run is None:
            return
        run.status = status
        run.records_processed = result.processed
        run.records_updated = result.updated_count
        run.records_failed = result.failed
        run.unresolved_carriers = result.unresolved or None
        run.error_message = error
        run.finished_at = result.finished_at
        self.db.commit()
