"""
Transfer Scheduler

Fires transfer attempts into the orchestrator:
- seed transfers at fixed offsets from start (t+0, t+10s, t+30s by default)
- one recurring transfer per interval with a random amount in [low, high)

Triggers feed a bounded queue drained by a fixed pool of workers, which caps
the number of in-flight transfers. A full queue makes the trigger wait.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .control_config import SeedTransfer
from .errors import PersistenceFailure
from .transfer_engine import (
    AMOUNT_QUANTUM,
    TransferAttempt,
    TransferOrchestrator,
    TransferResult,
)


AlertCallback = Callable[[TransferAttempt, PersistenceFailure], Awaitable[None]]


class TransferScheduler:
    """
    Seeded and recurring transfer triggers with a bounded worker pool

    Usage:
        scheduler = TransferScheduler(orchestrator, "rDest...", 606424328)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    RECURRING_JOB_ID = 'recurring_transfer'

    def __init__(
        self,
        orchestrator: TransferOrchestrator,
        destination_address: str,
        destination_tag: int,
        seed_transfers: Optional[List[SeedTransfer]] = None,
        interval_seconds: float = 60.0,
        amount_range: Tuple[float, float] = (1.0, 3.0),
        recurring_label: str = 'AUTOMATED_TRANSFER',
        max_concurrent_transfers: int = 4,
        queue_size: int = 100,
        on_persistence_failure: Optional[AlertCallback] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize scheduler

        Args:
            orchestrator: Transfer orchestrator
            destination_address: Address every attempt is sent to
            destination_tag: Numeric destination tag
            seed_transfers: Fixed startup sequence
            interval_seconds: Recurring trigger period
            amount_range: Recurring amount bounds [low, high)
            recurring_label: Source label of recurring attempts
            max_concurrent_transfers: Worker pool size
            queue_size: Bound of the dispatch queue
            on_persistence_failure: Operator alert for a failed terminal write
            rng: Random source for recurring amounts
        """
        self.orchestrator = orchestrator
        self.destination_address = destination_address
        self.destination_tag = destination_tag
        self.seed_transfers = list(seed_transfers or [])
        self.interval_seconds = interval_seconds
        self.amount_range = amount_range
        self.recurring_label = recurring_label
        self.max_concurrent_transfers = max_concurrent_transfers
        self.on_persistence_failure = on_persistence_failure
        self.rng = rng or random.Random()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []
        self._in_flight: Set[asyncio.Task] = set()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

        self.stats: Dict[str, int] = {
            'triggered': 0,
            'confirmed': 0,
            'pending': 0,
            'abandoned': 0,
            'persistence_failures': 0,
        }

        logger.info(f"Transfer scheduler initialized ({len(self.seed_transfers)} seeds, "
                    f"every {interval_seconds}s, {max_concurrent_transfers} workers)")

    @property
    def is_running(self) -> bool:
        return self._running

    def draw_recurring_amount(self) -> Decimal:
        """Uniform amount in [low, high), truncated to six fractional digits"""
        low, high = self.amount_range
        value = low + self.rng.random() * (high - low)
        return Decimal(str(value)).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)

    def start(self):
        """Start workers, seed jobs and the recurring job (no-op when running)"""
        if self._running:
            return

        # A shut-down AsyncIOScheduler cannot be started again
        scheduler = AsyncIOScheduler(timezone="UTC")
        now = datetime.now(timezone.utc)
        for index, seed in enumerate(self.seed_transfers):
            scheduler.add_job(
                self.trigger,
                DateTrigger(run_date=now + timedelta(seconds=seed.offset_seconds)),
                args=[seed.amount, seed.label],
                id=f"seed_transfer_{index}",
                replace_existing=True,
                misfire_grace_time=None,
            )

        scheduler.add_job(
            self.trigger_recurring,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.RECURRING_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        self._workers = [
            asyncio.create_task(self._worker(n), name=f"transfer_worker_{n}")
            for n in range(self.max_concurrent_transfers)
        ]
        self._running = True

        logger.info("🚀 Transfer scheduler started")
        for seed in self.seed_transfers:
            logger.info(f"  Seed: {seed.label} {seed.amount} at t+{seed.offset_seconds:g}s")

    async def stop(self, drain_timeout: Optional[float] = None):
        """
        Stop triggering and drain queued attempts

        In-flight runs are never cancelled and are awaited even past the drain
        timeout. Attempts still queued after the timeout are recorded as
        abandoned pending transfers, so every queued attempt leaves a record.

        Args:
            drain_timeout: Maximum seconds to wait for the queue to drain
        """
        if not self._running:
            return
        self._running = False

        if self._scheduler is not None:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self._queue.qsize()} queued transfers not drained within {drain_timeout}s")

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight transfers")
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        while not self._queue.empty():
            attempt = self._queue.get_nowait()
            try:
                await self._abandon(attempt)
            finally:
                self._queue.task_done()

        logger.info(f"Transfer scheduler stopped: {self.stats}")

    async def trigger(self, amount, source_label: str) -> Optional[TransferAttempt]:
        """
        Create an attempt and queue it for the worker pool

        Waits while the queue is full.

        Returns:
            The queued attempt, or None when nothing was queued
        """
        if not self._running:
            logger.warning(f"Scheduler not running, {source_label} trigger ignored")
            return None

        try:
            attempt = TransferAttempt(
                amount=amount,
                source_label=source_label,
                destination_address=self.destination_address,
                destination_tag=self.destination_tag,
            )
        except ValueError as e:
            logger.error(f"✗ {source_label} trigger rejected: {e}")
            return None

        await self._queue.put(attempt)
        self.stats['triggered'] += 1
        logger.info(f"💸 {source_label}: queued {attempt.amount} ({self._queue.qsize()} waiting)")
        return attempt

    async def trigger_recurring(self) -> Optional[TransferAttempt]:
        return await self.trigger(self.draw_recurring_amount(), self.recurring_label)

    async def _worker(self, number: int):
        while True:
            attempt = await self._queue.get()
            try:
                # A started run always reaches its terminal record
                task = asyncio.create_task(self._execute(attempt))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
                await asyncio.shield(task)
            finally:
                self._queue.task_done()

    async def _execute(self, attempt: TransferAttempt) -> Optional[TransferResult]:
        try:
            result = await self.orchestrator.run(attempt)
        except PersistenceFailure as e:
            await self._report_persistence_failure(attempt, e)
            return None
        except Exception:
            logger.exception(f"Transfer {attempt.attempt_id} raised unexpectedly")
            return None

        self._handle_result(result)
        return result

    async def _abandon(self, attempt: TransferAttempt):
        try:
            self.orchestrator.record_abandoned(attempt, "Scheduler stopped before execution")
        except PersistenceFailure as e:
            await self._report_persistence_failure(attempt, e)
            return
        self.stats['abandoned'] += 1

    async def _report_persistence_failure(self, attempt: TransferAttempt, error: PersistenceFailure):
        self.stats['persistence_failures'] += 1
        logger.critical(f"🚨 Transfer {attempt.attempt_id} outcome NOT recorded: {error}")
        if self.on_persistence_failure is not None:
            try:
                await self.on_persistence_failure(attempt, error)
            except Exception as alert_error:
                logger.error(f"Persistence alert failed: {alert_error}")

    def _handle_result(self, result: TransferResult):
        if result.success:
            self.stats['confirmed'] += 1
            logger.info(f"✓ {result.attempt_id} confirmed: {result.tx_hash}")
        else:
            self.stats['pending'] += 1
            failed_at = result.failed_stage.value if result.failed_stage else 'unknown'
            logger.warning(f"⚠ {result.attempt_id} pending after {failed_at} failure: {result.error}")
