"""
Ledger Network

Broadcast network capability backed by an XRP Ledger JSON-RPC endpoint.

Each pipeline run opens its own LedgerSession (one aiohttp session per run,
never pooled across runs):
- provision_credential(): fresh single-use keypair via wallet_propose
- submit(payment, credential): sign-and-submit, returns the engine result code

Only ACCEPTANCE_CODE counts as an accepted payment.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict, Optional

import aiohttp
from loguru import logger

from .errors import BroadcastRejected, ProvisioningFailed


ACCEPTANCE_CODE = 'tesSUCCESS'
DROPS_PER_UNIT = Decimal('1000000')


@dataclass
class LedgerCredential:
    """Single-use account credential"""
    address: str
    secret: str

    def __repr__(self):
        # Never log the secret
        return f"LedgerCredential({self.address})"


@dataclass
class Payment:
    """Payment submitted to the broadcast network"""
    account: str
    destination: str
    amount: Decimal  # already quantized to six fractional digits
    destination_tag: int
    fee: int  # drops

    def to_tx_json(self) -> Dict:
        return {
            'TransactionType': 'Payment',
            'Account': self.account,
            'Destination': self.destination,
            'Amount': str(int(self.amount * DROPS_PER_UNIT)),
            'DestinationTag': self.destination_tag,
            'Fee': str(self.fee),
        }


@dataclass
class BroadcastReceipt:
    """Synchronous answer of the broadcast network"""
    result_code: str
    tx_hash: Optional[str]
    message: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.result_code == ACCEPTANCE_CODE


class LedgerSession:
    """JSON-RPC session bound to one pipeline run"""

    def __init__(self, rpc_url: str, session: aiohttp.ClientSession):
        self.rpc_url = rpc_url
        self.session = session

    async def _call(self, method: str, params: Dict) -> Dict:
        """
        Issue a JSON-RPC call

        Returns:
            The "result" object of the response

        Raises:
            aiohttp.ClientError / asyncio.TimeoutError on transport failure
            ValueError on a malformed response
        """
        payload = {'method': method, 'params': [params]}
        async with self.session.post(self.rpc_url, json=payload) as response:
            response.raise_for_status()
            body = await response.json(content_type=None)

        result = body.get('result') if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise ValueError(f"Malformed {method} response: {str(body)[:200]}")
        return result

    async def provision_credential(self) -> LedgerCredential:
        """
        Generate a fresh single-use credential

        Raises:
            ProvisioningFailed: the node refused or returned no keypair
        """
        try:
            result = await self._call('wallet_propose', {})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ProvisioningFailed(f"wallet_propose failed: {e}") from e

        if result.get('status') == 'error':
            raise ProvisioningFailed(
                f"wallet_propose refused: {result.get('error_message') or result.get('error')}"
            )

        address = result.get('account_id')
        secret = result.get('master_seed')
        if not address or not secret:
            raise ProvisioningFailed("wallet_propose returned no keypair")

        logger.debug(f"Provisioned single-use account {address}")
        return LedgerCredential(address=address, secret=secret)

    async def submit(self, payment: Payment, credential: LedgerCredential) -> BroadcastReceipt:
        """
        Sign and submit a payment

        Args:
            payment: Payment to broadcast
            credential: Credential of the paying account

        Returns:
            BroadcastReceipt with the engine result code

        Raises:
            BroadcastRejected: transport failure or error response (no result code)
        """
        params = {
            'tx_json': payment.to_tx_json(),
            'secret': credential.secret,
            'fee_mult_max': 1000,
        }

        try:
            result = await self._call('submit', params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise BroadcastRejected('transport_error', str(e)[:300]) from e

        if result.get('status') == 'error' and 'engine_result' not in result:
            raise BroadcastRejected(
                result.get('error', 'unknown_error'),
                result.get('error_message')
            )

        tx_json = result.get('tx_json') or {}
        return BroadcastReceipt(
            result_code=result.get('engine_result', 'unknown'),
            tx_hash=tx_json.get('hash'),
            message=result.get('engine_result_message'),
        )


class XrplBroadcastNetwork:
    """
    XRP Ledger broadcast network

    Usage:
        async with network.session() as ledger:
            credential = await ledger.provision_credential()
            receipt = await ledger.submit(payment, credential)
    """

    def __init__(self, rpc_url: str, fee_drops: int = 12, timeout_seconds: float = 20.0):
        self.rpc_url = rpc_url
        self.fee_drops = fee_drops
        self.timeout_seconds = timeout_seconds
        logger.info(f"Ledger network configured: {rpc_url} (fee {fee_drops} drops)")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[LedgerSession]:
        """Open a transient session for one pipeline run"""
        http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
        )
        try:
            yield LedgerSession(self.rpc_url, http)
        finally:
            await http.close()
