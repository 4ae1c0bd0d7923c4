"""
Transfer Engine

Staged transfer pipeline with a guaranteed outcome record:
1. PROVISIONED - fresh single-use credential on the target network
2. FUNDED - value acquired from the funding provider
3. CONVERTED - funded asset converted into the destination asset
4. BROADCAST - payment submitted with destination address and tag
5. CONFIRMED / FAILED_PENDING - exactly one record written either way

A failure at any stage ends the run in FAILED_PENDING with a locally
generated hash. Only a failed terminal write (PersistenceFailure) escapes.
"""

import re
import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass, asdict

from loguru import logger

from .conversion import RateSource
from .errors import (
    BroadcastRejected,
    ConversionFailed,
    FundingUnavailable,
    TransferControlError,
)
from .funding import FundingProvider, FundingResult
from .ledger_network import Payment, XrplBroadcastNetwork
from .transaction_history import (
    STATUS_CONFIRMED,
    STATUS_PENDING,
    TransactionHistoryDB,
    TransferRecord,
)


AMOUNT_QUANTUM = Decimal('0.000001')
TX_HASH_PATTERN = re.compile(r'^[0-9A-F]{64}$')


def quantize_amount(amount) -> Decimal:
    """Round to the ledger's six fractional digits (half up)"""
    return Decimal(str(amount)).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def generate_fallback_hash() -> str:
    """Hash-shaped placeholder: 64 uppercase hex characters"""
    return secrets.token_hex(32).upper()


def is_tx_hash(value: Optional[str]) -> bool:
    return bool(value) and TX_HASH_PATTERN.match(value) is not None


class TransferStage(Enum):
    """Pipeline states"""
    INIT = "init"
    PROVISIONED = "provisioned"
    FUNDED = "funded"
    CONVERTED = "converted"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED_PENDING = "failed_pending"


# Stage a run was working towards when it failed
_NEXT_STAGE = {
    TransferStage.INIT: TransferStage.PROVISIONED,
    TransferStage.PROVISIONED: TransferStage.FUNDED,
    TransferStage.FUNDED: TransferStage.CONVERTED,
    TransferStage.CONVERTED: TransferStage.BROADCAST,
    TransferStage.BROADCAST: TransferStage.CONFIRMED,
}


@dataclass
class TransferAttempt:
    """One scheduled transfer, consumed once by the engine"""
    amount: Decimal
    source_label: str
    destination_address: str
    destination_tag: int
    requested_at: Optional[datetime] = None
    attempt_id: Optional[str] = None

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {self.amount}")
        if self.requested_at is None:
            self.requested_at = datetime.now(timezone.utc)
        if self.attempt_id is None:
            self.attempt_id = f"{self.source_label}_{uuid.uuid4().hex[:8]}"


@dataclass
class TransferResult:
    """Structured outcome returned to the caller"""
    attempt_id: str
    success: bool
    tx_hash: str
    status: str
    amount: Decimal
    stage: TransferStage
    failed_stage: Optional[TransferStage] = None
    error: Optional[str] = None
    record_id: Optional[int] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['amount'] = str(self.amount)
        data['stage'] = self.stage.value
        data['failed_stage'] = self.failed_stage.value if self.failed_stage else None
        if self.completed_at:
            data['completed_at'] = self.completed_at.isoformat()
        return data


class TransferOrchestrator:
    """
    Runs the staged transfer pipeline

    Guarantees:
    1. Every run writes exactly one TransferRecord
    2. Amounts are quantized to six fractional digits before broadcast and persistence
    3. Only the designated acceptance code yields a confirmed record
    4. Stage failures never escape; PersistenceFailure always does
    """

    def __init__(
        self,
        network: XrplBroadcastNetwork,
        funding_provider: FundingProvider,
        history_db: TransactionHistoryDB,
        rate_source: Optional[RateSource] = None,
        currency: str = 'XRP',
        network_label: str = 'xrp_ledger_testnet'
    ):
        """
        Initialize orchestrator

        Args:
            network: Broadcast network (opens one session per run)
            funding_provider: Funding capability for the ephemeral address
            history_db: Append-only persistence store
            rate_source: Conversion rates, needed when funding and destination assets differ
            currency: Destination asset
            network_label: Network label stored with every record
        """
        self.network = network
        self.funding_provider = funding_provider
        self.history_db = history_db
        self.rate_source = rate_source
        self.currency = currency.upper()
        self.network_label = network_label

        logger.info("Transfer orchestrator initialized")
        logger.info(f"  Destination asset: {self.currency} on {network_label}")
        logger.info(f"  Funding asset: {funding_provider.asset}")
        logger.info(f"  Conversion: {'enabled' if rate_source else 'disabled'}")

    async def _convert(self, requested: Decimal, funding: FundingResult) -> Decimal:
        """
        Compute the destination-asset amount to send

        Never sends more than the requested amount or than the funded value.

        Raises:
            ConversionFailed: no rate, no reported funding, or nothing left after rounding
        """
        if funding.asset.upper() == self.currency:
            logger.info("⚡ Conversion skipped (funding and destination assets match)")
            if funding.funded_amount is None:
                return requested
            amount = min(requested, quantize_amount(funding.funded_amount))
        else:
            if self.rate_source is None:
                raise ConversionFailed(f"No rate source for {funding.asset}/{self.currency}")
            if funding.funded_amount is None:
                raise ConversionFailed("Funding provider did not report the funded amount")

            rate = await self.rate_source.get_rate(funding.asset, self.currency)
            converted = quantize_amount(funding.funded_amount * rate)
            logger.info(f"Converted {funding.funded_amount} {funding.asset} -> {converted} {self.currency} (rate {rate})")
            amount = min(requested, converted)

        if amount <= 0:
            raise ConversionFailed(f"Converted amount {amount} is below the ledger minimum")
        return amount

    async def run(self, attempt: TransferAttempt) -> TransferResult:
        """
        Execute one pipeline run

        Args:
            attempt: Transfer attempt

        Returns:
            TransferResult (success only when the payment was accepted)

        Raises:
            PersistenceFailure: the terminal record could not be written
        """
        start_time = datetime.now(timezone.utc)
        stage = TransferStage.INIT
        amount = quantize_amount(attempt.amount)
        tx_hash: Optional[str] = None
        error: Optional[str] = None

        logger.info(f"Starting transfer: {attempt.attempt_id}")
        logger.info(f"  Trigger: {attempt.source_label}")
        logger.info(f"  To: {attempt.destination_address} (tag {attempt.destination_tag})")
        logger.info(f"  Amount: {amount} {self.currency}")

        try:
            if amount <= 0:
                raise ConversionFailed(f"Amount {attempt.amount} is below the ledger precision")

            async with self.network.session() as ledger:
                # Step 1: Provision single-use credential
                credential = await ledger.provision_credential()
                stage = TransferStage.PROVISIONED
                logger.info(f"✓ Provisioned {credential.address}")

                # Step 2: Acquire funding
                funding = await self.funding_provider.acquire(credential.address, amount)
                if not funding.success:
                    raise FundingUnavailable(funding.error or "Funding provider declined")
                stage = TransferStage.FUNDED
                logger.info(f"✓ Funded ({funding.funded_amount if funding.funded_amount is not None else 'unreported'} {funding.asset})")

                # Step 3: Convert
                amount = await self._convert(amount, funding)
                stage = TransferStage.CONVERTED

                # Step 4: Broadcast
                payment = Payment(
                    account=credential.address,
                    destination=attempt.destination_address,
                    amount=amount,
                    destination_tag=attempt.destination_tag,
                    fee=self.network.fee_drops,
                )
                receipt = await ledger.submit(payment, credential)

                if not receipt.accepted:
                    raise BroadcastRejected(receipt.result_code, receipt.message)

                network_hash = (receipt.tx_hash or '').upper()
                if not is_tx_hash(network_hash):
                    raise BroadcastRejected(receipt.result_code, f"accepted without a valid hash ({receipt.tx_hash!r})")
                stage = TransferStage.BROADCAST

                tx_hash = network_hash
                stage = TransferStage.CONFIRMED

        except Exception as e:
            if stage == TransferStage.CONFIRMED:
                # Payment already accepted; only the session teardown failed
                logger.warning(f"Ledger session teardown failed after {attempt.attempt_id} was confirmed: {e}")
            elif isinstance(e, TransferControlError):
                error = str(e)
                logger.error(f"✗ Transfer {attempt.attempt_id} failed at {_NEXT_STAGE[stage].value}: {error}")
            else:
                error = f"Unexpected {type(e).__name__}: {e}"
                logger.exception(f"✗ Transfer {attempt.attempt_id} failed at {_NEXT_STAGE[stage].value}")

        return self._record_outcome(attempt, amount, stage, tx_hash, error, start_time)

    def record_abandoned(self, attempt: TransferAttempt, reason: str) -> TransferResult:
        """
        Record an attempt that will never run (e.g. still queued at shutdown)

        Raises:
            PersistenceFailure: the terminal record could not be written
        """
        logger.warning(f"⚠ Transfer {attempt.attempt_id} abandoned: {reason}")
        return self._record_outcome(
            attempt,
            quantize_amount(attempt.amount),
            TransferStage.INIT,
            None,
            reason,
            datetime.now(timezone.utc),
        )

    def _record_outcome(
        self,
        attempt: TransferAttempt,
        amount: Decimal,
        stage: TransferStage,
        tx_hash: Optional[str],
        error: Optional[str],
        start_time: datetime
    ) -> TransferResult:
        """Write the single terminal record of an attempt"""
        success = stage == TransferStage.CONFIRMED
        failed_stage = None if success else _NEXT_STAGE[stage]
        if not success:
            tx_hash = generate_fallback_hash()

        record = TransferRecord(
            attempt_id=attempt.attempt_id,
            destination_address=attempt.destination_address,
            amount=amount,
            currency=self.currency,
            network=self.network_label,
            tx_hash=tx_hash,
            memo=str(attempt.destination_tag),
            status=STATUS_CONFIRMED if success else STATUS_PENDING,
            source_label=attempt.source_label,
            failed_stage=failed_stage.value if failed_stage else None,
            error_message=error,
        )

        # Terminal write; PersistenceFailure propagates to the caller
        record_id = self.history_db.append(record)

        total_time = (datetime.now(timezone.utc) - start_time).total_seconds()
        if success:
            logger.info(f"✅ Transfer {attempt.attempt_id} confirmed in {total_time:.1f}s: {tx_hash}")
        else:
            logger.warning(f"⚠ Transfer {attempt.attempt_id} recorded as pending with fallback hash {tx_hash}")

        return TransferResult(
            attempt_id=attempt.attempt_id,
            success=success,
            tx_hash=tx_hash,
            status=record.status,
            amount=amount,
            stage=TransferStage.CONFIRMED if success else TransferStage.FAILED_PENDING,
            failed_stage=failed_stage,
            error=error,
            record_id=record_id,
            completed_at=datetime.now(timezone.utc),
        )
