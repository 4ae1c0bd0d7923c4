"""
Control Plane

Composition root: wires the persistence store, broadcast network, funding
provider, rate source, orchestrator, transfer scheduler, liveness supervisor
and exchange executor from a ControlConfig, and owns their lifecycle.
"""

import asyncio
import signal
from typing import Optional

from loguru import logger

from .control_config import ControlConfig
from .conversion import ExchangeRateSource, RateSource, StaticRateSource
from .errors import ConfigurationError, PersistenceFailure
from .funding import FaucetFundingProvider, FundingProvider, ReserveFundingProvider
from .ledger_network import XrplBroadcastNetwork
from .liveness_supervisor import HttpWorkerAgent, LivenessSupervisor
from .order_executor import ExchangeOrderExecutor
from .transaction_history import TransactionHistoryDB
from .transfer_engine import TransferAttempt, TransferOrchestrator
from .transfer_scheduler import TransferScheduler


def build_funding_provider(config: ControlConfig) -> FundingProvider:
    funding = config.funding
    if funding.provider == 'faucet':
        return FaucetFundingProvider(funding.faucet_url, asset=funding.asset, timeout_seconds=funding.timeout_seconds)
    if funding.provider == 'reserve':
        logger.warning("Reserve funding is a local simulation; provisioned credentials receive no ledger value")
        return ReserveFundingProvider(funding.reserve_balance, asset=funding.asset)
    raise ConfigurationError(f"Unknown funding provider: {funding.provider}")


async def alert_persistence_failure(attempt: TransferAttempt, error: PersistenceFailure):
    """Operator alert for an outcome that could not be recorded"""
    logger.critical(
        f"🚨 OPERATOR ACTION REQUIRED: {attempt.source_label} transfer of {attempt.amount} "
        f"to {attempt.destination_address} (tag {attempt.destination_tag}) has no history record: {error}"
    )


class ControlPlane:
    """
    Owns every long-running component

    Usage:
        plane = ControlPlane.from_config(load_config())
        await plane.run_forever()
    """

    def __init__(
        self,
        config: ControlConfig,
        history_db: TransactionHistoryDB,
        orchestrator: TransferOrchestrator,
        scheduler: TransferScheduler,
        supervisor: LivenessSupervisor,
        executor: ExchangeOrderExecutor,
        static_rates: Optional[StaticRateSource] = None
    ):
        self.config = config
        self.history_db = history_db
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.supervisor = supervisor
        self.executor = executor
        self.static_rates = static_rates

        self._stop_event: Optional[asyncio.Event] = None
        self._started = False

    @classmethod
    def from_config(cls, config: ControlConfig) -> 'ControlPlane':
        """Build every component from configuration"""
        if not config.destination.address:
            raise ConfigurationError("destination.address is required to run transfers")

        history_db = TransactionHistoryDB(config.storage.db_path)
        network = XrplBroadcastNetwork(
            config.ledger.rpc_url,
            fee_drops=config.ledger.fee_drops,
            timeout_seconds=config.ledger.timeout_seconds,
        )
        static_rates = StaticRateSource(config.conversion.rates)
        orchestrator = TransferOrchestrator(
            network=network,
            funding_provider=build_funding_provider(config),
            history_db=history_db,
            rate_source=static_rates,
            currency=config.destination.currency,
            network_label=config.destination.network_label,
        )

        schedule = config.schedule
        scheduler = TransferScheduler(
            orchestrator,
            destination_address=config.destination.address,
            destination_tag=config.destination.tag,
            seed_transfers=schedule.seed_transfers,
            interval_seconds=schedule.interval_seconds,
            amount_range=schedule.amount_range,
            recurring_label=schedule.recurring_label,
            max_concurrent_transfers=schedule.max_concurrent_transfers,
            queue_size=schedule.queue_size,
            on_persistence_failure=alert_persistence_failure,
        )

        sup = config.supervisor
        hour, minute = sup.daily_restart_hour_minute
        supervisor = LivenessSupervisor(
            [HttpWorkerAgent(agent_id, sup.agent_base_url, sup.request_timeout_seconds) for agent_id in sup.agents],
            poll_interval_seconds=sup.poll_interval_seconds,
            daily_restart_hour=hour,
            daily_restart_minute=minute,
            restart_spacing_seconds=sup.restart_spacing_seconds,
        )

        executor = ExchangeOrderExecutor(config.venue_credentials)

        return cls(config, history_db, orchestrator, scheduler, supervisor, executor, static_rates)

    def _select_rate_source(self) -> RateSource:
        venue = self.config.conversion.venue
        if venue and self.executor.is_connected(venue):
            logger.info(f"Conversion rates from {venue} (static fallback)")
            return ExchangeRateSource(self.executor, venue, fallback=self.static_rates)
        if venue:
            logger.warning(f"Rate venue {venue} not connected, using static rates")
        return self.static_rates

    async def start(self):
        """Connect venues, check the fleet, then start supervision and transfers"""
        if self._started:
            return
        self._started = True

        logger.info("=" * 60)
        logger.info("STARTING TRANSFER CONTROL PLANE")
        logger.info("=" * 60)

        if self.executor.venue_credentials:
            await self.executor.connect_all()
        self.orchestrator.rate_source = self._select_rate_source()

        await self.supervisor.ensure_all_running()
        self.supervisor.start()
        self.scheduler.start()

        logger.info(f"  Destination: {self.config.destination.address} (tag {self.config.destination.tag})")
        logger.info(f"  Agents: {[a.agent_id for a in self.supervisor.agents]}")

    async def stop(self, timeout: float = 60.0):
        """
        Stop transfers (draining queued attempts), supervision and connections

        Args:
            timeout: Maximum seconds to wait for queued transfers to drain
        """
        if not self._started:
            return
        self._started = False

        logger.info("Stopping transfer control plane...")
        await self.scheduler.stop(drain_timeout=timeout)
        self.supervisor.stop()
        await self.executor.close()
        self.history_db.print_statistics()
        self.history_db.close()
        logger.info("✓ Transfer control plane stopped")

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self):
        """Run until SIGINT or SIGTERM"""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                logger.debug(f"Signal handler for {sig.name} unavailable")

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
