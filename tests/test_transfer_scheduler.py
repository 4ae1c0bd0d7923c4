"""
Tests for the transfer scheduler and its worker pool.
"""

import asyncio
import random
from decimal import Decimal

import pytest

from conftest import DESTINATION, DESTINATION_TAG, VALID_HASH, FailingHistoryDB, FakeNetwork
from transfer_control.control_config import SeedTransfer
from transfer_control.transfer_engine import TransferOrchestrator
from transfer_control.transfer_scheduler import TransferScheduler


def make_scheduler(orchestrator, **kwargs) -> TransferScheduler:
    kwargs.setdefault("interval_seconds", 3600)
    return TransferScheduler(orchestrator, DESTINATION, DESTINATION_TAG, **kwargs)


class TestRecurringAmount:
    """Test the recurring amount draw."""

    def test_amounts_within_range(self, orchestrator):
        scheduler = make_scheduler(orchestrator, amount_range=(1.0, 3.0), rng=random.Random(42))

        for _ in range(500):
            amount = scheduler.draw_recurring_amount()
            assert Decimal("1") <= amount < Decimal("3")
            assert amount == amount.quantize(Decimal("0.000001"))

    def test_seeded_rng_is_reproducible(self, orchestrator):
        first = make_scheduler(orchestrator, rng=random.Random(7))
        second = make_scheduler(orchestrator, rng=random.Random(7))
        assert [first.draw_recurring_amount() for _ in range(5)] == [second.draw_recurring_amount() for _ in range(5)]


class TestTriggers:
    """Test trigger, drain and stop."""

    @pytest.mark.asyncio
    async def test_triggered_attempts_are_all_recorded(self, orchestrator, history_db):
        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=3)
        scheduler.start()

        for index in range(10):
            await scheduler.trigger(Decimal("1.5"), f"MANUAL_{index}")
        await scheduler.stop(drain_timeout=10)

        assert history_db.count() == 10
        assert scheduler.stats["triggered"] == 10
        assert scheduler.stats["confirmed"] == 10
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_trigger_when_stopped_is_ignored(self, orchestrator, history_db):
        scheduler = make_scheduler(orchestrator)
        assert await scheduler.trigger(Decimal("1"), "LATE") is None
        assert history_db.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_amount_is_not_queued(self, orchestrator, history_db):
        scheduler = make_scheduler(orchestrator)
        scheduler.start()

        assert await scheduler.trigger(Decimal("0"), "ZERO") is None
        await scheduler.stop(drain_timeout=5)

        assert scheduler.stats["triggered"] == 0
        assert history_db.count() == 0

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(self, history_db, funding):
        network = FakeNetwork(delay=0.02)
        orchestrator = TransferOrchestrator(network, funding, history_db)
        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=2)
        scheduler.start()

        for index in range(6):
            await scheduler.trigger(Decimal("1"), f"BURST_{index}")
        await scheduler.stop(drain_timeout=10)

        assert history_db.count() == 6
        assert network.max_active <= 2

    @pytest.mark.asyncio
    async def test_mixed_outcomes_counted(self, history_db, funding):
        network = FakeNetwork(responses=[("tesSUCCESS", VALID_HASH), ("tecPATH_DRY", None)] * 3)
        orchestrator = TransferOrchestrator(network, funding, history_db)
        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=1)
        scheduler.start()

        for index in range(6):
            await scheduler.trigger(Decimal("2"), f"MIXED_{index}")
        await scheduler.stop(drain_timeout=10)

        assert history_db.count() == 6
        assert scheduler.stats["confirmed"] == 3
        assert scheduler.stats["pending"] == 3

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator):
        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=2)
        scheduler.start()
        scheduler.start()

        assert len(scheduler._workers) == 2
        assert len(scheduler._scheduler.get_jobs()) == 1
        await scheduler.stop(drain_timeout=5)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, orchestrator, history_db):
        scheduler = make_scheduler(orchestrator)
        scheduler.start()
        await scheduler.stop(drain_timeout=5)

        scheduler.start()
        assert scheduler.is_running is True
        assert len(scheduler._scheduler.get_jobs()) == 1

        await scheduler.trigger(Decimal("1.5"), "AFTER_RESTART")
        await scheduler.stop(drain_timeout=5)

        assert [r.source_label for r in history_db.get_all_records()] == ["AFTER_RESTART"]

    @pytest.mark.asyncio
    async def test_drain_timeout_still_records_every_attempt(self, history_db, funding):
        network = FakeNetwork(delay=0.3)
        orchestrator = TransferOrchestrator(network, funding, history_db)
        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=1)
        scheduler.start()

        for index in range(3):
            await scheduler.trigger(Decimal("1"), f"SLOW_{index}")
        await scheduler.stop(drain_timeout=0.05)

        # The running transfer completes, the queued ones are abandoned
        assert history_db.count() == 3
        assert scheduler.stats["confirmed"] == 1
        assert scheduler.stats["abandoned"] == 2
        assert len(history_db.get_records_by_status("pending")) == 2
        assert network.sessions_closed == network.sessions_opened == 1

    @pytest.mark.asyncio
    async def test_seed_transfers_fire_on_start(self, orchestrator, history_db):
        seeds = [
            SeedTransfer(0, Decimal("5.25"), "INITIAL_TRANSFER"),
            SeedTransfer(0, Decimal("2.75"), "FOLLOWUP_TRANSFER"),
        ]
        scheduler = make_scheduler(orchestrator, seed_transfers=seeds)
        scheduler.start()

        await asyncio.sleep(0.5)
        await scheduler.stop(drain_timeout=5)

        labels = sorted(r.source_label for r in history_db.get_all_records())
        assert labels == ["FOLLOWUP_TRANSFER", "INITIAL_TRANSFER"]


class TestPersistenceAlert:
    """Test the operator alert on a failed terminal write."""

    @pytest.mark.asyncio
    async def test_alert_raised_and_workers_survive(self, network, funding):
        db = FailingHistoryDB(":memory:")
        orchestrator = TransferOrchestrator(network, funding, db)
        alerts = []

        async def on_failure(attempt, error):
            alerts.append((attempt.source_label, str(error)))

        scheduler = make_scheduler(orchestrator, max_concurrent_transfers=1, on_persistence_failure=on_failure)
        scheduler.start()

        await scheduler.trigger(Decimal("1"), "FIRST")
        await scheduler.trigger(Decimal("1"), "SECOND")
        await scheduler.stop(drain_timeout=5)
        db.close()

        assert [label for label, _ in alerts] == ["FIRST", "SECOND"]
        assert "disk full" in alerts[0][1]
        assert scheduler.stats["persistence_failures"] == 2
