"""
Transfer Control

Agent liveness supervision and staged value transfer with guaranteed records.

Components:
- liveness_supervisor: Worker agent polling, auto-restart and daily sweep
- transfer_engine: Staged transfer pipeline (provision, fund, convert, broadcast)
- transfer_scheduler: Seeded and recurring triggers with a bounded worker pool
- transaction_history: Append-only SQLite transfer log
- order_executor: Live exchange order execution
- control_config: YAML + environment configuration
- control_plane: Composition root and lifecycle

Transfer stages:
1. PROVISIONED - Fresh single-use credential
2. FUNDED - Value acquired for the ephemeral address
3. CONVERTED - Funded asset converted into the destination asset
4. BROADCAST - Payment submitted with destination tag
5. CONFIRMED / FAILED_PENDING - Exactly one record either way
"""

from .transfer_engine import (
    TransferOrchestrator,
    TransferAttempt,
    TransferResult,
    TransferStage,
)
from .transfer_scheduler import (
    TransferScheduler,
)
from .liveness_supervisor import (
    LivenessSupervisor,
    WorkerAgent,
    HttpWorkerAgent,
    HealthStatus,
)
from .transaction_history import (
    TransactionHistoryDB,
    TransferRecord,
)
from .order_executor import (
    ExchangeOrderExecutor,
    OrderResult,
)
from .control_config import (
    ControlConfig,
    load_config,
    configure_logging,
)
from .control_plane import (
    ControlPlane,
)

__all__ = [
    # Transfer pipeline
    'TransferOrchestrator',
    'TransferAttempt',
    'TransferResult',
    'TransferStage',
    'TransferScheduler',

    # Supervision
    'LivenessSupervisor',
    'WorkerAgent',
    'HttpWorkerAgent',
    'HealthStatus',

    # History tracking
    'TransactionHistoryDB',
    'TransferRecord',

    # Exchange execution
    'ExchangeOrderExecutor',
    'OrderResult',

    # Configuration
    'ControlConfig',
    'load_config',
    'configure_logging',

    # Composition
    'ControlPlane',
]

__version__ = '1.0.0'
__author__ = 'Transfer Control'
__description__ = 'Agent liveness supervision and staged transfers with guaranteed records'
