"""
Transaction History Database

Append-only SQLite store for transfer outcomes.

Tables:
- transfer_records: one immutable row per transfer attempt

Rows are never updated or deleted; a correction is a new record.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, asdict
from pathlib import Path
from loguru import logger

from .errors import PersistenceFailure


STATUS_PENDING = 'pending'
STATUS_CONFIRMED = 'confirmed'
STATUS_REJECTED = 'rejected'

VALID_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED, STATUS_REJECTED)


@dataclass
class TransferRecord:
    """Persisted outcome of one transfer attempt"""
    attempt_id: str
    destination_address: str
    amount: Decimal
    currency: str
    network: str
    tx_hash: str
    memo: str
    status: str  # 'pending', 'confirmed', 'rejected'
    source_label: str
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        data = asdict(self)
        data['amount'] = str(self.amount)
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'TransferRecord':
        return cls(
            id=row['id'],
            attempt_id=row['attempt_id'],
            destination_address=row['destination_address'],
            amount=Decimal(row['amount']),
            currency=row['currency'],
            network=row['network'],
            tx_hash=row['tx_hash'],
            memo=row['memo'],
            status=row['status'],
            source_label=row['source_label'],
            failed_stage=row['failed_stage'],
            error_message=row['error_message'],
            created_at=datetime.fromisoformat(row['created_at']),
        )


class TransactionHistoryDB:
    """
    SQLite database for transfer records

    Features:
    - Append-only transfer logging
    - Lookup by id, status and destination
    - Summary statistics
    """

    def __init__(self, db_path: str = "transfer_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for a private in-process store)
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Transaction history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        # Amounts are stored as text to keep exactly six fractional digits
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transfer_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                attempt_id TEXT NOT NULL,
                destination_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                network TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                memo TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                source_label TEXT NOT NULL,
                failed_stage TEXT,
                error_message TEXT,
                created_at TIMESTAMP NOT NULL,
                CONSTRAINT valid_status CHECK (status IN ('pending', 'confirmed', 'rejected')),
                CONSTRAINT hash_shape CHECK (length(tx_hash) = 64)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_status ON transfer_records(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_destination ON transfer_records(destination_address)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_created ON transfer_records(created_at)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def append(self, record: TransferRecord) -> int:
        """
        Append a transfer record

        Args:
            record: Transfer record (its id is filled in on success)

        Returns:
            Row id of the new record

        Raises:
            PersistenceFailure: the record could not be written
        """
        if record.status not in VALID_STATUSES:
            raise PersistenceFailure(f"Invalid record status: {record.status}")
        if self.conn is None:
            raise PersistenceFailure(f"History store is closed, {record.attempt_id} not written")

        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO transfer_records (
                    attempt_id, destination_address, amount, currency, network,
                    tx_hash, memo, status, source_label, failed_stage,
                    error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.attempt_id,
                record.destination_address,
                str(record.amount),
                record.currency,
                record.network,
                record.tx_hash,
                record.memo,
                record.status,
                record.source_label,
                record.failed_stage,
                record.error_message,
                record.created_at.isoformat(),
            ))
            self.conn.commit()

        except sqlite3.Error as e:
            logger.error(f"✗ Error recording transfer {record.attempt_id}: {e}")
            try:
                self.conn.rollback()
            except sqlite3.Error:
                pass
            raise PersistenceFailure(f"Could not append record for {record.attempt_id}: {e}") from e

        record.id = cursor.lastrowid
        logger.info(f"✓ Transfer recorded: #{record.id} {record.status} {record.amount} {record.currency}")
        return record.id

    def get_record(self, record_id: int) -> Optional[TransferRecord]:
        """
        Get record by id

        Args:
            record_id: Row id

        Returns:
            Transfer record or None
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM transfer_records WHERE id = ?", (record_id,))
        row = cursor.fetchone()

        if row:
            return TransferRecord.from_row(row)
        return None

    def get_records_by_status(self, status: str) -> List[TransferRecord]:
        """Get all records with the given status, newest first"""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM transfer_records WHERE status = ? ORDER BY id DESC",
            (status,)
        )
        return [TransferRecord.from_row(row) for row in cursor.fetchall()]

    def get_records_by_destination(self, destination_address: str) -> List[TransferRecord]:
        """Get all records sent to an address, newest first"""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM transfer_records WHERE destination_address = ? ORDER BY id DESC",
            (destination_address,)
        )
        return [TransferRecord.from_row(row) for row in cursor.fetchall()]

    def get_all_records(self, limit: Optional[int] = None) -> List[TransferRecord]:
        """Get records in insertion order, or the newest `limit` records first"""
        cursor = self.conn.cursor()
        if limit is None:
            cursor.execute("SELECT * FROM transfer_records ORDER BY id")
        else:
            cursor.execute("SELECT * FROM transfer_records ORDER BY id DESC LIMIT ?", (limit,))
        return [TransferRecord.from_row(row) for row in cursor.fetchall()]

    def count(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM transfer_records")
        return cursor.fetchone()[0]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get transfer statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT status, COUNT(*) FROM transfer_records GROUP BY status")
        by_status = {status: 0 for status in VALID_STATUSES}
        for row in cursor.fetchall():
            by_status[row[0]] = row[1]

        total = sum(by_status.values())

        # Summed in Python so the six-digit precision survives
        cursor.execute("SELECT amount FROM transfer_records WHERE status = ?", (STATUS_CONFIRMED,))
        confirmed_volume = sum((Decimal(row[0]) for row in cursor.fetchall()), Decimal('0'))

        cursor.execute("SELECT MIN(created_at), MAX(created_at) FROM transfer_records")
        first_at, last_at = cursor.fetchone()

        success_rate = (by_status[STATUS_CONFIRMED] / total * 100) if total > 0 else 0

        return {
            'total_records': total,
            'confirmed_records': by_status[STATUS_CONFIRMED],
            'pending_records': by_status[STATUS_PENDING],
            'rejected_records': by_status[STATUS_REJECTED],
            'success_rate': success_rate,
            'confirmed_volume': confirmed_volume,
            'first_record_at': first_at,
            'last_record_at': last_at,
        }

    def print_statistics(self):
        """Print statistics"""
        stats = self.get_statistics()

        print("\n" + "="*80)
        print("TRANSFER STATISTICS")
        print("="*80)
        print(f"Total Records:        {stats['total_records']}")
        print(f"Confirmed:            {stats['confirmed_records']}")
        print(f"Pending:              {stats['pending_records']}")
        print(f"Rejected:             {stats['rejected_records']}")
        print(f"Success Rate:         {stats['success_rate']:.1f}%")
        print(f"Confirmed Volume:     {stats['confirmed_volume']:.6f}")
        print(f"First Record:         {stats['first_record_at'] or '-'}")
        print(f"Last Record:          {stats['last_record_at'] or '-'}")
        print("="*80 + "\n")

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
