"""
Funding Providers

Pluggable sources of value for the ephemeral address of a pipeline run.

Providers:
- FaucetFundingProvider: HTTP faucet (testnet style), one aiohttp session per call
- ReserveFundingProvider: local reserve budget, debited per acquisition

Both answer acquire(address, amount) with a FundingResult; they never raise.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import aiohttp
from loguru import logger


@dataclass
class FundingResult:
    """Outcome of a funding request"""
    success: bool
    asset: str
    funded_amount: Optional[Decimal] = None
    error: Optional[str] = None


class FundingProvider:
    """Base class for funding providers"""

    asset: str = 'XRP'

    async def acquire(self, address: str, amount: Decimal) -> FundingResult:
        """
        Acquire value for an address

        Args:
            address: Ephemeral address to fund
            amount: Value needed, expressed in the destination asset

        Returns:
            FundingResult with the amount actually available, in self.asset
        """
        raise NotImplementedError


class FaucetFundingProvider(FundingProvider):
    """
    Faucet-backed funding

    POSTs {"destination": address} to the faucet; the faucet decides how much
    it pays out and reports it as "amount" (or "balance").
    """

    def __init__(self, faucet_url: str, asset: str = 'XRP', timeout_seconds: float = 30.0):
        self.faucet_url = faucet_url
        self.asset = asset
        self.timeout_seconds = timeout_seconds
        logger.info(f"Faucet funding provider: {faucet_url} ({asset})")

    async def acquire(self, address: str, amount: Decimal) -> FundingResult:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.faucet_url, json={'destination': address}) as response:
                    if response.status >= 300:
                        text = await response.text()
                        return FundingResult(
                            success=False,
                            asset=self.asset,
                            error=f"Faucet HTTP {response.status}: {text[:200]}"
                        )
                    body = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return FundingResult(success=False, asset=self.asset, error=f"Faucet request failed: {e}")

        paid = None
        if isinstance(body, dict):
            paid = body.get('amount', body.get('balance'))

        funded_amount = None
        if paid is not None:
            try:
                funded_amount = Decimal(str(paid))
            except InvalidOperation:
                return FundingResult(success=False, asset=self.asset, error=f"Faucet returned invalid amount {paid!r}")

        if funded_amount is not None and funded_amount <= 0:
            return FundingResult(success=False, asset=self.asset, error="Faucet paid nothing")

        logger.info(f"✓ Faucet funded {address[:10]}... with {funded_amount if funded_amount is not None else 'unreported'} {self.asset}")
        return FundingResult(success=True, asset=self.asset, funded_amount=funded_amount)


class ReserveFundingProvider(FundingProvider):
    """
    Reserve-backed funding (local simulation)

    Debits an in-memory budget expressed in the provider asset. No value
    moves on the ledger, so the provisioned credential stays unfunded and a
    live broadcast from it is rejected. Use it for dry runs and tests; the
    faucet provider is the one that funds credentials. Requests larger than
    the remaining reserve fail.
    """

    def __init__(self, balance: Decimal, asset: str = 'XRP'):
        self.balance = Decimal(balance)
        self.asset = asset
        logger.info(f"Reserve funding provider: {self.balance} {asset}")

    async def acquire(self, address: str, amount: Decimal) -> FundingResult:
        if amount <= 0:
            return FundingResult(success=False, asset=self.asset, error=f"Invalid funding amount {amount}")

        if amount > self.balance:
            return FundingResult(
                success=False,
                asset=self.asset,
                error=f"Reserve exhausted: {self.balance} {self.asset} left, {amount} requested"
            )

        self.balance -= amount
        logger.info(f"✓ Reserve funded {address[:10]}... with {amount} {self.asset} ({self.balance} left)")
        return FundingResult(success=True, asset=self.asset, funded_amount=amount)
