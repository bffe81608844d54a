"""SQLite database operations for finquery."""

import logging
import sqlite3
import time
from collections.abc import Generator
from contextlib import contextmanager
from datetime import date
from pathlib import Path

from finquery.config import settings
from finquery.errors import TransportFailure
from finquery.models import Subscription, Transaction, UsageRecord

logger = logging.getLogger(__name__)

# Features with a counter column in ai_usage. Feature names are interpolated
# into SQL as column names, so only these are accepted.
USAGE_FEATURES = ("categorization", "chat", "recurring_detection", "insights", "search")

# SQL schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    merchant_name TEXT,
    amount REAL NOT NULL,
    date TEXT NOT NULL,
    category TEXT,
    is_income INTEGER NOT NULL DEFAULT 0,
    pending INTEGER NOT NULL DEFAULT 0,
    account_id TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY,
    subscription_tier TEXT NOT NULL DEFAULT 'free',
    subscription_status TEXT NOT NULL DEFAULT 'none'
);

CREATE TABLE IF NOT EXISTS ai_usage (
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    categorization_requests INTEGER NOT NULL DEFAULT 0,
    chat_requests INTEGER NOT NULL DEFAULT 0,
    recurring_detection_requests INTEGER NOT NULL DEFAULT 0,
    insights_requests INTEGER NOT NULL DEFAULT 0,
    search_requests INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (user_id, date)
);
"""

TRANSACTION_COLUMNS = "id, name, merchant_name, amount, date, category, is_income, pending, account_id"


def _usage_column(feature: str) -> str:
    if feature not in USAGE_FEATURES:
        raise ValueError(f"Unknown AI feature: {feature}")
    return f"{feature}_requests"


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path | None = None, busy_timeout: float = 30.0):
        if db_path is None:
            settings.ensure_directories()
        self.db_path = db_path or settings.db_path
        self.busy_timeout = busy_timeout
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ==================== LEDGER ====================

    def add_transactions_batch(self, user_id: str, transactions: list[Transaction]) -> int:
        """Load ledger rows for a user. Returns the number of rows inserted."""
        with self._get_connection() as conn:
            cursor = conn.executemany(
                f"""
                INSERT OR IGNORE INTO transactions (user_id, {TRANSACTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id,
                        txn.id,
                        txn.name,
                        txn.merchant_name,
                        txn.amount,
                        txn.date.isoformat(),
                        txn.category,
                        int(txn.is_income),
                        int(txn.pending),
                        txn.account_id,
                    )
                    for txn in transactions
                ],
            )
            conn.commit()
            return cursor.rowcount

    def get_transactions(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[Transaction]:
        """Get a user's transactions, optionally clipped to a date range."""
        query = f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE user_id = ?"
        params: list = [user_id]

        if start_date:
            query += " AND date >= ?"
            params.append(start_date.isoformat())
        if end_date:
            query += " AND date <= ?"
            params.append(end_date.isoformat())

        query += " ORDER BY date DESC, id"

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def get_transaction_count(self) -> int:
        """Get total number of transactions."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT COUNT(*) as count FROM transactions")
            return cursor.fetchone()["count"]

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        """Convert a database row to a Transaction model."""
        return Transaction(
            id=row["id"],
            name=row["name"],
            merchant_name=row["merchant_name"],
            amount=row["amount"],
            date=date.fromisoformat(row["date"]),
            category=row["category"],
            is_income=bool(row["is_income"]),
            pending=bool(row["pending"]),
            account_id=row["account_id"],
        )

    # ==================== SUBSCRIPTIONS ====================

    def set_subscription(self, user_id: str, tier: str, status: str) -> None:
        """Record a user's subscription tier and status."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO user_profiles (user_id, subscription_tier, subscription_status)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    subscription_tier = excluded.subscription_tier,
                    subscription_status = excluded.subscription_status
                """,
                (user_id, tier, status),
            )
            conn.commit()

    def get_subscription(self, user_id: str) -> Subscription:
        """Get a user's subscription; users without a profile are on the free tier."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT subscription_tier, subscription_status FROM user_profiles WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return Subscription()
        return Subscription(tier=row["subscription_tier"], status=row["subscription_status"])

    # ==================== AI USAGE ====================

    def consume_usage(self, user_id: str, feature: str, usage_date: date, limit: int) -> int | None:
        """
        Atomically increment a feature counter if it is below the limit.

        The conditional upsert runs inside a single IMMEDIATE transaction, so
        two connections can never both increment past the limit.

        Args:
            user_id: User whose counter to increment
            feature: One of USAGE_FEATURES
            usage_date: Calendar day of the counter row
            limit: Maximum allowed value of the counter

        Returns:
            The new counter value, or None if the limit was already reached
        """
        column = _usage_column(feature)
        if limit <= 0:
            return None

        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    f"""
                    INSERT INTO ai_usage (user_id, date, {column}) VALUES (?, ?, 1)
                    ON CONFLICT(user_id, date) DO UPDATE SET
                        {column} = {column} + 1,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE ai_usage.{column} < ?
                    """,
                    (user_id, usage_date.isoformat(), limit),
                )
                if cursor.rowcount == 0:
                    conn.execute("ROLLBACK")
                    return None
                used = conn.execute(
                    f"SELECT {column} FROM ai_usage WHERE user_id = ? AND date = ?",
                    (user_id, usage_date.isoformat()),
                ).fetchone()[0]
                conn.execute("COMMIT")
                return used
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def add_token_usage(self, user_id: str, usage_date: date, input_tokens: int, output_tokens: int) -> None:
        """Accumulate token counts onto a day's usage record."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO ai_usage (user_id, date, input_tokens, output_tokens) VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date) DO UPDATE SET
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, usage_date.isoformat(), input_tokens, output_tokens),
            )
            conn.commit()

    def get_usage(self, user_id: str, usage_date: date) -> UsageRecord:
        """Get a day's usage record; days without activity read as all zeros."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM ai_usage WHERE user_id = ? AND date = ?",
                (user_id, usage_date.isoformat()),
            )
            row = cursor.fetchone()
        if row is None:
            return UsageRecord(user_id=user_id, date=usage_date)
        return UsageRecord(
            user_id=row["user_id"],
            date=date.fromisoformat(row["date"]),
            **{f"{feature}_requests": row[f"{feature}_requests"] for feature in USAGE_FEATURES},
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
        )


class SQLiteLedger:
    """Read-only view of one user's transactions."""

    def __init__(self, database: Database, user_id: str, retry_delay: float = 0.5):
        self._db = database
        self.user_id = user_id
        self.retry_delay = retry_delay

    def fetch_transactions(self, start_date: date | None = None, end_date: date | None = None) -> list[Transaction]:
        """Read transactions, retrying once if the store is busy or unavailable."""
        try:
            return self._db.get_transactions(self.user_id, start_date=start_date, end_date=end_date)
        except sqlite3.OperationalError as e:
            logger.warning(f"Ledger read failed for user {self.user_id}, retrying: {e}")
            time.sleep(self.retry_delay)

        try:
            return self._db.get_transactions(self.user_id, start_date=start_date, end_date=end_date)
        except sqlite3.OperationalError as e:
            logger.error(f"Ledger read failed for user {self.user_id}: {e}")
            raise TransportFailure() from e


_db: Database | None = None


def get_database() -> Database:
    """Get the shared database instance, creating it on first use."""
    global _db
    if _db is None:
        _db = Database()
    return _db
