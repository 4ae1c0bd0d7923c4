"""
Shared fakes for the transfer control tests.

The fakes stand in for the external capabilities (ledger node, funding
provider, worker agents) so pipeline runs are deterministic and offline.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

import pytest

from transfer_control.errors import PersistenceFailure
from transfer_control.funding import FundingProvider, FundingResult
from transfer_control.ledger_network import ACCEPTANCE_CODE, BroadcastReceipt, LedgerCredential
from transfer_control.liveness_supervisor import WorkerAgent
from transfer_control.transaction_history import TransactionHistoryDB
from transfer_control.transfer_engine import TransferOrchestrator


VALID_HASH = "E08D6E9754025BA2534A78707605E0601F03ACE063687A0CA1BDDACFCD1698C7"
DESTINATION = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
DESTINATION_TAG = 606424328


class FakeLedgerSession:
    def __init__(self, network: 'FakeNetwork'):
        self.network = network

    async def provision_credential(self) -> LedgerCredential:
        self.network.provision_calls += 1
        if self.network.provision_error is not None:
            raise self.network.provision_error
        return LedgerCredential(address=f"rEphemeral{self.network.provision_calls}", secret="sEdSecret")

    async def submit(self, payment, credential) -> BroadcastReceipt:
        self.network.payments.append(payment)
        if self.network.delay:
            await asyncio.sleep(self.network.delay)
        if self.network.submit_error is not None:
            raise self.network.submit_error
        if self.network.responses:
            code, tx_hash = self.network.responses.pop(0)
        else:
            code, tx_hash = self.network.result_code, self.network.tx_hash
        return BroadcastReceipt(result_code=code, tx_hash=tx_hash, message=f"{code} message")


class FakeNetwork:
    """Broadcast network answering every submit with a configured result"""

    fee_drops = 12

    def __init__(
        self,
        result_code: str = ACCEPTANCE_CODE,
        tx_hash: Optional[str] = VALID_HASH,
        provision_error: Optional[Exception] = None,
        submit_error: Optional[Exception] = None,
        responses: Optional[List] = None,
        delay: float = 0.0,
        close_error: Optional[Exception] = None
    ):
        self.result_code = result_code
        self.tx_hash = tx_hash
        self.provision_error = provision_error
        self.submit_error = submit_error
        self.responses = list(responses or [])
        self.delay = delay
        self.close_error = close_error

        self.provision_calls = 0
        self.payments = []
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.active = 0
        self.max_active = 0

    @asynccontextmanager
    async def session(self):
        self.sessions_opened += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield FakeLedgerSession(self)
        finally:
            self.active -= 1
            self.sessions_closed += 1
            if self.close_error is not None:
                raise self.close_error


class FakeFunding(FundingProvider):
    def __init__(self, success: bool = True, asset: str = 'XRP', funded_amount=None, error: str = "faucet empty"):
        self.success = success
        self.asset = asset
        self.funded_amount = Decimal(str(funded_amount)) if funded_amount is not None else None
        self.error = error
        self.calls = []

    async def acquire(self, address, amount) -> FundingResult:
        self.calls.append((address, amount))
        if not self.success:
            return FundingResult(success=False, asset=self.asset, error=self.error)
        funded = self.funded_amount if self.funded_amount is not None else amount
        return FundingResult(success=True, asset=self.asset, funded_amount=funded)


class FailingHistoryDB(TransactionHistoryDB):
    """Store whose every write fails"""

    def append(self, record):
        raise PersistenceFailure(f"disk full while writing {record.attempt_id}")


class FakeAgent(WorkerAgent):
    def __init__(self, agent_id, running=True, status_error=None, restart_result=True, restart_error=None):
        super().__init__(agent_id)
        self.running = running
        self.status_error = status_error
        self.restart_result = restart_result
        self.restart_error = restart_error
        self.status_calls = 0
        self.restart_calls = 0
        self.restart_times = []

    async def is_running(self) -> bool:
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return self.running

    async def restart(self) -> bool:
        self.restart_calls += 1
        self.restart_times.append(asyncio.get_running_loop().time())
        if self.restart_error is not None:
            raise self.restart_error
        return self.restart_result


@pytest.fixture
def history_db():
    db = TransactionHistoryDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def funding():
    return FakeFunding()


@pytest.fixture
def orchestrator(network, funding, history_db):
    return TransferOrchestrator(network=network, funding_provider=funding, history_db=history_db)
