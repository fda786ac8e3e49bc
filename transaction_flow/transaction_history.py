"""
Transaction History Database

SQLite database holding every transaction attempt, including attempts that
failed before execution.

Tables:
- transactions: One row per attempt (status pending -> completed | failed)
- fees: Per-component fee rows
- errors: Error logging
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .models import FailedStep, FeeBreakdown, TransactionRecord, TransactionStatus


class TransactionHistoryDB:
    """
    SQLite database for transaction history

    Features:
    - Attempt logging (pending, completed and failed records)
    - Monotonic status updates (pending -> completed | failed)
    - Fee component recording
    - Error logging
    - Statistics queries
    """

    def __init__(self, db_path: str = "transaction_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for an in-memory database)
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Transaction history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        # Duplicate attempts share a transaction_id, so it is not unique
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                record_id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                amount REAL NOT NULL,
                currency TEXT NOT NULL,
                asset TEXT,
                recipient TEXT,
                payment_method TEXT,
                timestamp TIMESTAMP NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                failed_at_step TEXT,
                description TEXT NOT NULL,
                fees_total REAL,
                net_amount REAL,
                correlation_id TEXT,
                completed_at TIMESTAMP,
                CONSTRAINT valid_status CHECK (status IN ('pending', 'completed', 'failed')),
                CONSTRAINT non_negative_amount CHECK (amount >= 0)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fees (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL,
                fee_type TEXT NOT NULL,
                amount REAL NOT NULL,
                rate REAL,
                chain TEXT,
                recorded_at TIMESTAMP NOT NULL,
                CONSTRAINT valid_fee_type CHECK (
                    fee_type IN ('platform', 'network', 'provider', 'exchange', 'protocol', 'total')
                ),
                CONSTRAINT positive_fee CHECK (amount >= 0)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT,
                error_type TEXT NOT NULL,
                error_message TEXT NOT NULL,
                occurred_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_tx_id ON transactions(transaction_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fees_tx_id ON fees(transaction_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    def record_transaction(self, record: TransactionRecord) -> bool:
        """
        Record a transaction attempt

        Args:
            record: Transaction record

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO transactions (
                    transaction_id, user_id, type, amount, currency, asset, recipient,
                    payment_method, timestamp, status, error, failed_at_step, description,
                    fees_total, net_amount, correlation_id, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.user_id,
                record.type,
                record.amount,
                record.currency,
                record.asset,
                record.recipient,
                record.payment_method,
                record.timestamp.isoformat(),
                record.status.value,
                record.error,
                record.failed_at_step.value if record.failed_at_step else None,
                record.description,
                record.fees_total,
                record.net_amount,
                record.correlation_id,
                record.completed_at.isoformat() if record.completed_at else None
            ))

            self.conn.commit()
            logger.info(f"✓ Transaction recorded: {record.id} ({record.status.value})")
            return True

        except Exception as e:
            logger.error(f"✗ Error recording transaction {record.id}: {e}")
            self.conn.rollback()
            return False

    def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        error: Optional[str] = None,
        failed_at_step: Optional[FailedStep] = None,
        correlation_id: Optional[str] = None
    ) -> bool:
        """
        Move a pending record to a terminal status

        Only pending records change; completed and failed records are final.

        Args:
            transaction_id: Transaction ID
            status: New status (completed or failed)
            error: Error message for failures
            failed_at_step: Failure step tag for failures
            correlation_id: Provider transaction id

        Returns:
            True if a pending record was updated
        """
        try:
            completed_at = datetime.now(timezone.utc).isoformat()
            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE transactions
                SET status = ?,
                    error = COALESCE(?, error),
                    failed_at_step = COALESCE(?, failed_at_step),
                    correlation_id = COALESCE(?, correlation_id),
                    completed_at = ?
                WHERE transaction_id = ? AND status = 'pending'
            """, (
                status.value,
                error,
                failed_at_step.value if failed_at_step else None,
                correlation_id,
                completed_at,
                transaction_id
            ))

            self.conn.commit()
            if cursor.rowcount == 0:
                logger.warning(f"No pending record to update for {transaction_id}")
                return False
            return True

        except Exception as e:
            logger.error(f"Error updating transaction {transaction_id}: {e}")
            self.conn.rollback()
            return False

    def set_correlation_id(self, transaction_id: str, correlation_id: str) -> bool:
        """Attach the provider transaction id to a pending record"""
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE transactions SET correlation_id = ?
                WHERE transaction_id = ? AND status = 'pending'
            """, (correlation_id, transaction_id))
            self.conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            logger.error(f"Error setting correlation id for {transaction_id}: {e}")
            return False

    def record_fees(self, transaction_id: str, fees: FeeBreakdown) -> bool:
        """
        Record fee components for a transaction

        Args:
            transaction_id: Transaction ID
            fees: Fee breakdown

        Returns:
            Success status
        """
        recorded_at = datetime.now(timezone.utc).isoformat()
        rows = [
            ('platform', fees.platform_fee, fees.rates.platform),
            ('network', fees.network_fee, fees.rates.network),
            ('provider', fees.provider_fee, fees.rates.provider),
            ('exchange', fees.exchange_fee, fees.rates.exchange),
            ('protocol', fees.protocol_fee, fees.rates.protocol),
            ('total', fees.total, None),
        ]

        try:
            cursor = self.conn.cursor()
            cursor.executemany("""
                INSERT INTO fees (transaction_id, fee_type, amount, rate, chain, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [(transaction_id, fee_type, amount, rate, fees.chain, recorded_at)
                  for fee_type, amount, rate in rows])

            self.conn.commit()
            return True

        except Exception as e:
            logger.error(f"Error recording fees for {transaction_id}: {e}")
            self.conn.rollback()
            return False

    def record_error(
        self,
        transaction_id: Optional[str],
        error_type: str,
        error_message: str
    ) -> bool:
        """
        Record an error

        Args:
            transaction_id: Transaction ID (if applicable)
            error_type: Type of error
            error_message: Error message

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO errors (transaction_id, error_type, error_message, occurred_at)
                VALUES (?, ?, ?, ?)
            """, (transaction_id, error_type, error_message, datetime.now(timezone.utc).isoformat()))

            self.conn.commit()
            return True

        except Exception as e:
            logger.error(f"Error recording error: {e}")
            return False

    def _row_to_record(self, row: sqlite3.Row) -> TransactionRecord:
        return TransactionRecord(
            id=row['transaction_id'],
            user_id=row['user_id'],
            type=row['type'],
            amount=row['amount'],
            currency=row['currency'],
            asset=row['asset'],
            recipient=row['recipient'],
            payment_method=row['payment_method'],
            timestamp=datetime.fromisoformat(row['timestamp']),
            status=TransactionStatus(row['status']),
            description=row['description'],
            error=row['error'],
            failed_at_step=FailedStep(row['failed_at_step']) if row['failed_at_step'] else None,
            fees_total=row['fees_total'],
            net_amount=row['net_amount'],
            correlation_id=row['correlation_id'],
            completed_at=datetime.fromisoformat(row['completed_at']) if row['completed_at'] else None,
        )

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        """
        Get the first recorded attempt for a transaction id

        Args:
            transaction_id: Transaction ID

        Returns:
            TransactionRecord or None
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM transactions WHERE transaction_id = ?
            ORDER BY record_id ASC LIMIT 1
        """, (transaction_id,))
        row = cursor.fetchone()

        if row:
            return self._row_to_record(row)
        return None

    def get_attempts(self, transaction_id: str) -> List[TransactionRecord]:
        """All recorded attempts for a transaction id, oldest first"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM transactions WHERE transaction_id = ? ORDER BY record_id ASC
        """, (transaction_id,))
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_transactions(self, user_id: str) -> List[TransactionRecord]:
        """
        Get a user's transactions in the order they were recorded

        Args:
            user_id: User ID

        Returns:
            List of transaction records
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM transactions WHERE user_id = ? ORDER BY record_id ASC
        """, (user_id,))
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_failed_transactions(self) -> List[TransactionRecord]:
        """Get all failed transactions"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM transactions WHERE status = 'failed' ORDER BY record_id ASC")
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_fees(self, transaction_id: str) -> Dict[str, float]:
        """Recorded fee components for a transaction"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT fee_type, amount FROM fees WHERE transaction_id = ?", (transaction_id,))
        return {row['fee_type']: row['amount'] for row in cursor.fetchall()}

    def get_errors(self, transaction_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM errors WHERE transaction_id = ? ORDER BY id ASC", (transaction_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get transaction statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM transactions")
        total = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM transactions WHERE status = 'completed'")
        completed = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM transactions WHERE status = 'failed'")
        failed = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM transactions WHERE status = 'pending'")
        pending = cursor.fetchone()[0]

        cursor.execute("SELECT SUM(amount) FROM transactions WHERE status = 'completed'")
        total_volume = cursor.fetchone()[0] or 0

        cursor.execute("SELECT SUM(fees_total) FROM transactions WHERE status = 'completed'")
        total_fees = cursor.fetchone()[0] or 0

        cursor.execute("""
            SELECT failed_at_step, COUNT(*) FROM transactions
            WHERE status = 'failed' GROUP BY failed_at_step
        """)
        failures_by_step = {row[0]: row[1] for row in cursor.fetchall()}

        success_rate = (completed / total * 100) if total > 0 else 0

        return {
            'total_transactions': total,
            'completed_transactions': completed,
            'failed_transactions': failed,
            'pending_transactions': pending,
            'success_rate': success_rate,
            'total_volume': total_volume,
            'total_fees': total_fees,
            'avg_fee_percent': (total_fees / total_volume * 100) if total_volume > 0 else 0,
            'failures_by_step': failures_by_step,
        }

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            logger.info("Database connection closed")
