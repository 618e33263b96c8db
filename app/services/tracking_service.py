"""
On-demand tracking operations: single and batch live refresh, manual
verification against the carrier and the stored verification summary.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.services.carrier_adapter import CarrierUnresolvedError
from app.services.carrier_registry import CarrierRegistry, build_registry
from app.services.fetch_executor import fetch_one, run_batch
from app.services.record_store import RecordNotFoundError, ShipmentReference, TrackingRecordStore
from app.services.record_updater import RecordUpdater

logger = logging.getLogger(__name__)


class TrackingService:
    def __init__(self, db: Session, registry: Optional[CarrierRegistry] = None, updater: Optional[RecordUpdater] = None):
        self.db = db
        self.store = TrackingRecordStore(db)
        self.registry = registry or build_registry(db)
        self.updater = updater or RecordUpdater(self.store)

    def _refs_for(self, awb: str) -> List[ShipmentReference]:
        refs = self.store.find_refs_by_awb(awb)
        if not refs:
            raise RecordNotFoundError(f"No order or return with AWB {awb}")
        return refs

    def _adapter_for(self, ref: ShipmentReference):
        adapter = self.registry.resolve(ref.carrier_text)
        if adapter is None:
            raise CarrierUnresolvedError(ref.carrier_text)
        return adapter

    def _unresolved_state(self, ref: ShipmentReference) -> dict:
        state = self.store.get_state(ref).to_dict()
        state["fetchOk"] = False
        state["error"] = f"unresolved carrier: {ref.carrier_text}"
        return state

    async def track_single(self, awb: str) -> List[dict]:
        """
        Live refresh of every record carrying this AWB.
        Each owner is classified with its own taxonomy. A record whose carrier
        cannot be resolved is reported in place; CarrierUnresolvedError is
        raised only when no record can be refreshed.
        """
        refs = self._refs_for(awb)
        resolved = [(ref, self.registry.resolve(ref.carrier_text)) for ref in refs]
        if all(adapter is None for _, adapter in resolved):
            raise CarrierUnresolvedError(refs[0].carrier_text)

        results = []
        for ref, adapter in resolved:
            if adapter is None:
                results.append(self._unresolved_state(ref))
                continue
            outcome = await fetch_one(adapter, ref.shipment_id, owner_type=ref.owner_type)
            self.updater.apply(ref, outcome)
            self.db.commit()
            state = self.store.get_state(ref).to_dict()
            state["fetchOk"] = outcome.ok
            results.append(state)
        return results

    async def track_batch(self, awbs: List[str]) -> Dict[str, object]:
        """
        Live refresh for up to TRACK_BATCH_MAX AWBs; per-AWB errors are reported, not raised.
        Every record found for an AWB appears under its "records", refreshed or
        not; unresolved carriers are also listed under "errors".
        """
        unique = list(dict.fromkeys(a.strip() for a in awbs if a and a.strip()))
        if not unique:
            raise ValueError("No AWB numbers given")
        if len(unique) > settings.TRACK_BATCH_MAX:
            raise ValueError(f"At most {settings.TRACK_BATCH_MAX} AWBs per request, got {len(unique)}")

        results: Dict[str, dict] = {}
        groups: Dict[tuple, List[tuple]] = {}
        for awb in unique:
            refs = self.store.find_refs_by_awb(awb)
            if not refs:
                results[awb] = {"error": "not_found"}
                continue
            entry = results[awb] = {"records": [], "errors": []}
            for ref in refs:
                adapter = self.registry.resolve(ref.carrier_text)
                if adapter is None:
                    state = self._unresolved_state(ref)
                    entry["records"].append(state)
                    entry["errors"].append({
                        "ownerType": ref.owner_type.value,
                        "ownerId": ref.owner_id,
                        "error": state["error"],
                    })
                    continue
                groups.setdefault((adapter.code, ref.owner_type), []).append((awb, ref))

        for (code, owner_type), members in groups.items():
            adapter = self.registry.get(code)
            outcomes = await run_batch([ref.shipment_id for _, ref in members], adapter, owner_type=owner_type)
            by_id = {o.shipment_id: o for o in outcomes}
            for _, ref in members:
                self.updater.apply(ref, by_id[ref.shipment_id])
            self.db.commit()
            for awb, ref in members:
                state = self.store.get_state(ref).to_dict()
                state["fetchOk"] = by_id[ref.shipment_id].ok
                results[awb]["records"].append(state)
        return {"requested": len(unique), "results": results}

    async def manual_verify(self, awb: str) -> dict:
        """
        Ask the carrier right now and store the answer as a partner snapshot.
        The system status is not overwritten.
        """
        ref = self._refs_for(awb)[0]
        adapter = self._adapter_for(ref)
        outcome = await fetch_one(adapter, ref.shipment_id, owner_type=ref.owner_type)
        self.updater.apply_partner_snapshot(ref, outcome)
        self.db.commit()
        record = self.store.get_record(ref)
        partner_status = outcome.payload.status_text if outcome.ok and outcome.payload else None
        return {
            "awb": ref.shipment_id,
            "ownerType": ref.owner_type.value,
            "carrier": adapter.code.value,
            "systemStatus": record.tracking_status,
            "partnerStatus": partner_status,
            "partnerCanonicalStatus": outcome.status,
            "matched": _matches(record.tracking_status, partner_status),
            "source": outcome.payload.source.value if outcome.payload else None,
            "error": outcome.error_message,
            "checkedAt": outcome.checked_at.isoformat(),
        }

    def verify_summary(self, awb: str) -> dict:
        """Compare the stored partner snapshot with the system status, no network."""
        ref = self._refs_for(awb)[0]
        record = self.store.get_record(ref)
        raw = record.partner_verified_raw or {}
        return {
            "awb": ref.shipment_id,
            "ownerType": ref.owner_type.value,
            "systemStatus": record.tracking_status,
            "partnerStatus": record.partner_verified_status,
            "partnerVerifiedAt": record.partner_verified_at.isoformat() if record.partner_verified_at else None,
            "partnerSource": record.partner_verified_source,
            "htmlLength": raw.get("htmlLength"),
            "matched": _matches(record.tracking_status, record.partner_verified_status),
        }

    def get_state(self, awb: str) -> List[dict]:
        return [self.store.get_state(ref).to_dict() for ref in self._refs_for(awb)]

    def reset_tracking(self, awb: str) -> List[dict]:
        refs = self._refs_for(awb)
        for ref in refs:
            self.updater.reset_tracking(ref)
        self.db.commit()
        return [self.store.get_state(ref).to_dict() for ref in refs]


def _matches(system_status: Optional[str], partner_status: Optional[str]) -> bool:
    # Canonical status vs raw carrier text: only equal when the carrier
    # already uses the canonical wording.
    if not system_status or not partner_status:
        return False
    return system_status.strip().lower() == partner_status.strip().lower()
