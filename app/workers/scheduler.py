"""
Reconciliation Scheduler

Runs the reconciliation sync on a fixed interval. One run at a time: a
scheduled tick that finds a run in progress is skipped (not queued), and a
manual trigger during a run is rejected.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from app.config import settings
from app.database import SessionLocal
from app.services.carrier_registry import build_registry
from app.services.reconciliation import ReconciliationOrchestrator, SyncResult

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(RuntimeError):
    pass


class ReconciliationScheduler:
    """Owns the timer task, the running flag and the single-run guard."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        registry_factory: Callable = build_registry,
        interval_seconds: Optional[int] = None,
        first_delay_seconds: Optional[int] = None,
        live: Optional[bool] = None,
        staleness_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.registry_factory = registry_factory
        self.interval = interval_seconds or settings.SYNC_INTERVAL_SECONDS
        self.first_delay = settings.SYNC_FIRST_DELAY_SECONDS if first_delay_seconds is None else first_delay_seconds
        self.live = settings.SYNC_LIVE if live is None else live
        self.staleness = timedelta(minutes=staleness_minutes or settings.SYNC_STALENESS_MINUTES)
        self.running = False
        self.in_progress = False
        self.skipped_ticks = 0
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[ReconciliationOrchestrator] = None

    async def run_once(
        self,
        live: Optional[bool] = None,
        trigger: str = "manual",
        staleness: Optional[timedelta] = None,
    ) -> Optional[SyncResult]:
        """
        Run one reconciliation now.
        Returns None when a scheduled tick is skipped because a run is in progress.
        """
        if self.in_progress:
            if trigger == "scheduled":
                self.skipped_ticks += 1
                logger.info(f"[RECON_SCHEDULER] Previous run still in progress, skipping tick ({self.skipped_ticks} skipped)")
                return None
            raise SyncAlreadyRunningError("Reconciliation already running")

        self.in_progress = True
        db = self.session_factory()
        try:
            orchestrator = ReconciliationOrchestrator(db, registry=self.registry_factory(db))
            self._current = orchestrator
            result = await orchestrator.run_sync(
                live=self.live if live is None else live,
                trigger=trigger,
                staleness=staleness,
            )
            self.last_result = result.to_dict()
            self.last_error = None
            return result
        except Exception as e:
            self.last_error = str(e)
            raise
        finally:
            self.last_run = datetime.now(timezone.utc)
            self._current = None
            self.in_progress = False
            db.close()

    def _owns_timer(self) -> bool:
        # A loop left behind by stop() during a run must not resume after a restart
        return self.running and self._task is asyncio.current_task()

    async def _loop(self) -> None:
        await asyncio.sleep(self.first_delay)
        logger.info(f"[RECON_SCHEDULER] Started (interval={self.interval}s, live={self.live})")
        while self._owns_timer():
            try:
                result = await self.run_once(trigger="scheduled", staleness=self.staleness)
                if result is not None:
                    logger.info(
                        f"[RECON_SCHEDULER] Run completed: processed={result.processed} "
                        f"updated={result.updated_count} failed={result.failed}"
                    )
            except Exception as e:
                logger.error(f"[RECON_SCHEDULER] Run failed: {e}")
            if not self._owns_timer():
                break
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the timer. Idempotent."""
        if self.running:
            return
        if self._task is not None and not self._task.done():
            logger.info("[RECON_SCHEDULER] Previous timer still finishing its run; it exits afterwards")
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("[RECON_SCHEDULER] Scheduler enabled")

    def stop(self) -> None:
        """Cancel the timer and ask the current run to stop at its next batch boundary."""
        self.running = False
        if self._current is not None:
            self._current.request_stop()
        if self._task is not None and not self.in_progress:
            self._task.cancel()
            self._task = None
        # Otherwise the run in flight finishes its current batch and the loop exits after it
        logger.info("[RECON_SCHEDULER] Scheduler stopped")

    def request_stop(self) -> bool:
        """Stop the current run only; the timer keeps going."""
        if self._current is None:
            return False
        self._current.request_stop()
        return True

    def get_status(self) -> Dict[str, Any]:
        next_run = None
        if self.running and self.last_run:
            next_run = (self.last_run + timedelta(seconds=self.interval)).isoformat()
        return {
            "enabled": self.running,
            "inProgress": self.in_progress,
            "live": self.live,
            "intervalSeconds": self.interval,
            "stalenessMinutes": int(self.staleness.total_seconds() // 60),
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": next_run,
            "skippedTicks": self.skipped_ticks,
            "lastResult": self.last_result,
            "lastError": self.last_error,
        }
