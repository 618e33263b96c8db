"""
Reconciliation scheduler tests - single-run guard, skipped ticks, start/stop
"""
import asyncio

import pytest

from app.database import SessionLocal
from app.models import CarrierCode
from app.services.carrier_registry import CarrierRegistry
from app.workers.scheduler import ReconciliationScheduler, SyncAlreadyRunningError


@pytest.fixture
def slow_registry(stub_adapter):
    return CarrierRegistry({CarrierCode.DELHIVERY: stub_adapter(delays={"SLOW": 0.2})})


@pytest.fixture
def scheduler(db_session, slow_registry):
    return ReconciliationScheduler(
        session_factory=SessionLocal,
        registry_factory=lambda db: slow_registry,
        interval_seconds=3600,
        first_delay_seconds=3600,
        live=True,
        staleness_minutes=30,
    )


async def _wait_until_in_progress(scheduler):
    for _ in range(100):
        if scheduler.in_progress:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("run never started")


class TestSingleRunGuard:
    async def test_run_once_records_result(self, scheduler, make_order):
        make_order(awb="A1")
        result = await scheduler.run_once()
        assert result.processed == 1
        status = scheduler.get_status()
        assert status["lastResult"]["processed"] == 1
        assert status["lastRun"] is not None
        assert status["inProgress"] is False

    async def test_scheduled_tick_skipped_while_running(self, scheduler, make_order):
        make_order(awb="SLOW")
        running = asyncio.create_task(scheduler.run_once())
        await _wait_until_in_progress(scheduler)

        assert await scheduler.run_once(trigger="scheduled") is None
        assert scheduler.skipped_ticks == 1

        result = await running
        assert result.processed == 1

    async def test_manual_trigger_rejected_while_running(self, scheduler, make_order):
        make_order(awb="SLOW")
        running = asyncio.create_task(scheduler.run_once())
        await _wait_until_in_progress(scheduler)

        with pytest.raises(SyncAlreadyRunningError):
            await scheduler.run_once(trigger="manual")
        await running

    async def test_request_stop_without_run(self, scheduler):
        assert scheduler.request_stop() is False


class TestStartStop:
    async def test_start_is_idempotent_and_stop_cancels(self, scheduler):
        scheduler.start()
        task = scheduler._task
        scheduler.start()
        assert scheduler._task is task
        assert scheduler.get_status()["enabled"] is True

        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert scheduler.running is False
        assert scheduler.get_status()["enabled"] is False

    async def test_restart_during_run_leaves_one_timer(self, db_session, slow_registry, make_order):
        make_order(awb="SLOW")
        scheduler = ReconciliationScheduler(
            session_factory=SessionLocal,
            registry_factory=lambda db: slow_registry,
            interval_seconds=3600,
            first_delay_seconds=0,
            live=True,
            staleness_minutes=30,
        )
        scheduler.start()
        old_timer = scheduler._task
        await _wait_until_in_progress(scheduler)

        scheduler.stop()
        scheduler.start()
        new_timer = scheduler._task
        assert new_timer is not old_timer

        # The old loop finishes its run and exits instead of sleeping for another tick
        await asyncio.wait_for(old_timer, timeout=2)
        assert not new_timer.done()
        assert scheduler.get_status()["lastResult"]["processed"] == 1

        scheduler.stop()
        with pytest.raises(asyncio.CancelledError):
            await new_timer
