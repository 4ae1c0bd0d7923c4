"""
Control Config

Loads control_config.yaml and applies environment overrides.

Sections:
- destination: where every transfer is sent
- ledger: broadcast network endpoint
- funding: funding provider selection
- conversion: approximate and live conversion rates
- schedule: seed transfers and the recurring trigger
- supervisor: worker agent set and timers
- storage / logging
- venues: exchange venues whose credentials are read from the environment
"""

import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml
from loguru import logger

from .errors import ConfigurationError


MAX_DESTINATION_TAG = 2 ** 32 - 1

DEFAULT_AGENTS = ['momentum', 'grid', 'arbitrage', 'cryptocom', 'optimism', 'web3']


@dataclass
class DestinationConfig:
    address: str = ''
    tag: int = 0
    currency: str = 'XRP'
    network_label: str = 'xrp_ledger_testnet'


@dataclass
class LedgerConfig:
    rpc_url: str = 'https://s.altnet.rippletest.net:51234/'
    fee_drops: int = 12
    timeout_seconds: float = 20.0


@dataclass
class FundingConfig:
    provider: str = 'faucet'  # 'faucet' or 'reserve'
    asset: str = 'XRP'
    faucet_url: str = 'https://faucet.altnet.rippletest.net/accounts'
    reserve_balance: Decimal = Decimal('0')
    timeout_seconds: float = 30.0


@dataclass
class ConversionConfig:
    rates: Dict[str, Decimal] = field(default_factory=dict)  # {"ETH/XRP": 5000}
    venue: Optional[str] = None  # live rates from this exchange when connected


@dataclass
class SeedTransfer:
    offset_seconds: float
    amount: Decimal
    label: str


def _default_seeds() -> List[SeedTransfer]:
    return [
        SeedTransfer(0, Decimal('5.25'), 'INITIAL_TRANSFER'),
        SeedTransfer(10, Decimal('2.75'), 'FOLLOWUP_TRANSFER'),
        SeedTransfer(30, Decimal('3.50'), 'CONTINUOUS_TRANSFER'),
    ]


@dataclass
class ScheduleConfig:
    seed_transfers: List[SeedTransfer] = field(default_factory=_default_seeds)
    interval_seconds: float = 60.0
    amount_range: Tuple[float, float] = (1.0, 3.0)
    recurring_label: str = 'AUTOMATED_TRANSFER'
    max_concurrent_transfers: int = 4
    queue_size: int = 100


@dataclass
class SupervisorConfig:
    agent_base_url: str = 'http://localhost:5000'
    agents: List[str] = field(default_factory=lambda: list(DEFAULT_AGENTS))
    poll_interval_seconds: float = 30.0
    daily_restart_time: str = '06:00'
    restart_spacing_seconds: float = 1.0
    request_timeout_seconds: float = 10.0

    @property
    def daily_restart_hour_minute(self) -> Tuple[int, int]:
        return parse_time_of_day(self.daily_restart_time)


@dataclass
class StorageConfig:
    db_path: str = 'transfer_history.db'


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    file: Optional[str] = None
    rotation: str = '10 MB'
    retention: str = '14 days'


@dataclass
class ControlConfig:
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    funding: FundingConfig = field(default_factory=FundingConfig)
    conversion: ConversionConfig = field(default_factory=ConversionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    venues: List[str] = field(default_factory=list)
    # venue -> {apiKey, secret[, password]}; only venues with credentials appear
    venue_credentials: Dict[str, Dict[str, str]] = field(default_factory=dict)


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """
    Parse "HH:MM" into (hour, minute)

    Raises:
        ConfigurationError: malformed or out-of-range value
    """
    try:
        hour_str, minute_str = str(value).strip().split(':')
        hour, minute = int(hour_str), int(minute_str)
    except ValueError:
        raise ConfigurationError(f"Invalid time of day {value!r}, expected HH:MM")

    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ConfigurationError(f"Time of day out of range: {value!r}")
    return hour, minute


def _to_decimal(value, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _to_float(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _build_config(raw: Dict) -> ControlConfig:
    config = ControlConfig()

    destination = raw.get('destination', {}) or {}
    config.destination = DestinationConfig(
        address=str(destination.get('address', config.destination.address)),
        tag=int(destination.get('tag', config.destination.tag)),
        currency=str(destination.get('currency', config.destination.currency)).upper(),
        network_label=str(destination.get('network_label', config.destination.network_label)),
    )

    ledger = raw.get('ledger', {}) or {}
    config.ledger = LedgerConfig(
        rpc_url=ledger.get('rpc_url', config.ledger.rpc_url),
        fee_drops=int(ledger.get('fee_drops', config.ledger.fee_drops)),
        timeout_seconds=_to_float(ledger.get('timeout_seconds', config.ledger.timeout_seconds), 'ledger.timeout_seconds'),
    )

    funding = raw.get('funding', {}) or {}
    config.funding = FundingConfig(
        provider=str(funding.get('provider', config.funding.provider)).lower(),
        asset=str(funding.get('asset', config.funding.asset)).upper(),
        faucet_url=funding.get('faucet_url', config.funding.faucet_url),
        reserve_balance=_to_decimal(funding.get('reserve_balance', config.funding.reserve_balance), 'funding.reserve_balance'),
        timeout_seconds=_to_float(funding.get('timeout_seconds', config.funding.timeout_seconds), 'funding.timeout_seconds'),
    )

    conversion = raw.get('conversion', {}) or {}
    config.conversion = ConversionConfig(
        rates={
            str(pair).upper(): _to_decimal(rate, f"conversion.rates[{pair}]")
            for pair, rate in (conversion.get('rates') or {}).items()
        },
        venue=conversion.get('venue'),
    )

    schedule = raw.get('schedule', {}) or {}
    seeds = config.schedule.seed_transfers
    if 'seed_transfers' in schedule:
        seeds = [
            SeedTransfer(
                offset_seconds=_to_float(seed.get('offset_seconds', 0), 'seed.offset_seconds'),
                amount=_to_decimal(seed['amount'], 'seed.amount'),
                label=str(seed.get('label', 'SEED_TRANSFER')),
            )
            for seed in (schedule.get('seed_transfers') or [])
        ]
    amount_range = schedule.get('amount_range', config.schedule.amount_range)
    config.schedule = ScheduleConfig(
        seed_transfers=seeds,
        interval_seconds=_to_float(schedule.get('interval_seconds', config.schedule.interval_seconds), 'schedule.interval_seconds'),
        amount_range=(_to_float(amount_range[0], 'amount_range'), _to_float(amount_range[1], 'amount_range')),
        recurring_label=str(schedule.get('recurring_label', config.schedule.recurring_label)),
        max_concurrent_transfers=int(schedule.get('max_concurrent_transfers', config.schedule.max_concurrent_transfers)),
        queue_size=int(schedule.get('queue_size', config.schedule.queue_size)),
    )

    supervisor = raw.get('supervisor', {}) or {}
    config.supervisor = SupervisorConfig(
        agent_base_url=str(supervisor.get('agent_base_url', config.supervisor.agent_base_url)).rstrip('/'),
        agents=[str(agent) for agent in supervisor.get('agents', config.supervisor.agents)],
        poll_interval_seconds=_to_float(supervisor.get('poll_interval_seconds', config.supervisor.poll_interval_seconds), 'supervisor.poll_interval_seconds'),
        daily_restart_time=str(supervisor.get('daily_restart_time', config.supervisor.daily_restart_time)),
        restart_spacing_seconds=_to_float(supervisor.get('restart_spacing_seconds', config.supervisor.restart_spacing_seconds), 'supervisor.restart_spacing_seconds'),
        request_timeout_seconds=_to_float(supervisor.get('request_timeout_seconds', config.supervisor.request_timeout_seconds), 'supervisor.request_timeout_seconds'),
    )

    storage = raw.get('storage', {}) or {}
    config.storage = StorageConfig(db_path=str(storage.get('db_path', config.storage.db_path)))

    logging_section = raw.get('logging', {}) or {}
    config.logging = LoggingConfig(
        level=str(logging_section.get('level', config.logging.level)).upper(),
        file=logging_section.get('file', config.logging.file),
        rotation=str(logging_section.get('rotation', config.logging.rotation)),
        retention=str(logging_section.get('retention', config.logging.retention)),
    )

    config.venues = [str(venue).lower() for venue in (raw.get('venues') or [])]
    return config


def _apply_environment(config: ControlConfig, environ: Mapping[str, str]):
    """Apply CONTROL_* overrides and read venue credentials"""
    if environ.get('CONTROL_AGENTS'):
        config.supervisor.agents = [a.strip() for a in environ['CONTROL_AGENTS'].split(',') if a.strip()]
    if environ.get('CONTROL_POLL_INTERVAL'):
        config.supervisor.poll_interval_seconds = _to_float(environ['CONTROL_POLL_INTERVAL'], 'CONTROL_POLL_INTERVAL')
    if environ.get('CONTROL_TRANSFER_INTERVAL'):
        config.schedule.interval_seconds = _to_float(environ['CONTROL_TRANSFER_INTERVAL'], 'CONTROL_TRANSFER_INTERVAL')
    if environ.get('CONTROL_DAILY_RESTART_TIME'):
        config.supervisor.daily_restart_time = environ['CONTROL_DAILY_RESTART_TIME']
    if environ.get('CONTROL_DB_PATH'):
        config.storage.db_path = environ['CONTROL_DB_PATH']
    if environ.get('CONTROL_LOG_LEVEL'):
        config.logging.level = environ['CONTROL_LOG_LEVEL'].upper()

    # Key and secret must both be present; a half-configured venue is skipped
    for venue in config.venues:
        prefix = venue.upper()
        api_key = environ.get(f'{prefix}_API_KEY')
        secret = environ.get(f'{prefix}_SECRET_KEY') or environ.get(f'{prefix}_API_SECRET')
        if not (api_key and secret):
            logger.debug(f"No credentials for {venue}, venue excluded")
            continue

        credentials = {'apiKey': api_key, 'secret': secret}
        password = environ.get(f'{prefix}_PASSWORD')
        if password:
            credentials['password'] = password
        config.venue_credentials[venue] = credentials


def validate_config(config: ControlConfig):
    """
    Validate a loaded configuration

    Raises:
        ConfigurationError: first invalid value found
    """
    if config.supervisor.poll_interval_seconds <= 0:
        raise ConfigurationError("supervisor.poll_interval_seconds must be positive")
    if config.supervisor.restart_spacing_seconds < 0:
        raise ConfigurationError("supervisor.restart_spacing_seconds must not be negative")
    if not config.supervisor.agents:
        raise ConfigurationError("supervisor.agents must list at least one agent")
    parse_time_of_day(config.supervisor.daily_restart_time)

    if config.schedule.interval_seconds <= 0:
        raise ConfigurationError("schedule.interval_seconds must be positive")
    low, high = config.schedule.amount_range
    if low <= 0 or high <= low:
        raise ConfigurationError(f"schedule.amount_range must satisfy 0 < low < high, got {config.schedule.amount_range}")
    if config.schedule.max_concurrent_transfers < 1:
        raise ConfigurationError("schedule.max_concurrent_transfers must be at least 1")
    if config.schedule.queue_size < 1:
        raise ConfigurationError("schedule.queue_size must be at least 1")
    for seed in config.schedule.seed_transfers:
        if seed.amount <= 0:
            raise ConfigurationError(f"Seed transfer {seed.label} must have a positive amount")
        if seed.offset_seconds < 0:
            raise ConfigurationError(f"Seed transfer {seed.label} has a negative offset")

    if not 0 <= config.destination.tag <= MAX_DESTINATION_TAG:
        raise ConfigurationError(f"destination.tag must be an unsigned 32-bit integer, got {config.destination.tag}")
    if config.funding.provider not in ('faucet', 'reserve'):
        raise ConfigurationError(f"Unknown funding provider: {config.funding.provider}")


def load_config(
    config_path: Optional[str] = "control_config.yaml",
    environ: Optional[Mapping[str, str]] = None
) -> ControlConfig:
    """
    Load configuration from YAML with environment overrides

    Args:
        config_path: Path to control config; a missing file yields defaults
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated ControlConfig
    """
    if environ is None:
        environ = os.environ

    raw: Dict = {}
    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            try:
                with open(config_file, 'r', encoding='utf-8') as f:
                    raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Could not parse {config_file}: {e}") from e
            logger.info(f"Loaded control config from {config_file}")
        else:
            logger.warning(f"Config file {config_file} not found, using defaults")

    if not isinstance(raw, dict):
        raise ConfigurationError("Top level of the control config must be a mapping")

    try:
        config = _build_config(raw)
    except (KeyError, TypeError, IndexError, ValueError) as e:
        raise ConfigurationError(f"Malformed control config: {e}") from e

    _apply_environment(config, environ)
    validate_config(config)

    logger.info(f"  Agents: {config.supervisor.agents}")
    logger.info(f"  Venues with credentials: {sorted(config.venue_credentials) or 'none'}")
    return config


def configure_logging(settings: LoggingConfig):
    """Install the stderr sink and, when configured, a rotating file sink"""
    logger.remove()
    logger.add(sys.stderr, level=settings.level)
    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.file,
            level=settings.level,
            rotation=settings.rotation,
            retention=settings.retention,
            enqueue=True,
        )
