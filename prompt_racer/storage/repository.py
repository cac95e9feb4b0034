"""
Repository pattern for data access.

Holds the account-bound credit ledger and the race analytics log.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from prompt_racer.core.credits import (
    FREE_CREDITS,
    CreditLedger,
    GateDecision,
    Identity,
    LedgerUnavailable,
    validate_grant_amount,
)
from prompt_racer.core.race import resolve_winner_index

from .db import DEFAULT_DB_PATH, get_connection
from .models import CreditBalance, Purchase, RaceEntry, RaceRecord

logger = logging.getLogger(__name__)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the credit and race tables if they don't exist.

    credit_account rows are mutated only through conditional updates.
    credit_purchase, credit_settlement and the race tables are append-only.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS credit_account (
                account_id TEXT PRIMARY KEY,
                remaining INTEGER NOT NULL CHECK (remaining >= 0),
                total_consumed INTEGER NOT NULL DEFAULT 0,
                total_granted INTEGER NOT NULL DEFAULT 0,
                total_spent REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS credit_purchase (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL REFERENCES credit_account(account_id),
                credits INTEGER NOT NULL,
                amount_paid REAL,
                payment_reference TEXT,
                timestamp TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS credit_settlement (
                attempt_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES credit_account(account_id),
                charged INTEGER NOT NULL,
                timestamp TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS race_log (
                attempt_id TEXT PRIMARY KEY,
                identity_key TEXT NOT NULL,
                prompt TEXT NOT NULL,
                winner_id TEXT,
                total_time_ms INTEGER NOT NULL,
                timestamp TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS race_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                attempt_id TEXT NOT NULL REFERENCES race_log(attempt_id),
                backend_id TEXT NOT NULL,
                elapsed_ms INTEGER NOT NULL,
                winner INTEGER NOT NULL,
                error_kind TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


class AccountLedger(CreditLedger):
    """Credit ledger keyed by account id, stored in SQLite.

    The gate relies on a single conditional UPDATE so the balance check and
    the decrement can never interleave with another request for the same
    account. Any SQLite failure is reported as LedgerUnavailable so callers
    can fall back to the anonymous ledger.
    """

    name = "account"

    def __init__(self, db_path: str = DEFAULT_DB_PATH, free_credits: int = FREE_CREDITS):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
            free_credits: Allotment given to an account on first use
        """
        self.db_path = db_path
        self.free_credits = free_credits

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(self.name, str(e)) from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailable(self.name, str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        # Plain reads take no write lock, so they never queue behind a gate
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailable(self.name, str(e)) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise LedgerUnavailable(self.name, str(e)) from e
        finally:
            conn.close()

    @staticmethod
    def _account_id(identity: Identity) -> str:
        if not identity.account_id:
            raise ValueError("account ledger requires an account_id")
        return identity.account_id

    def _ensure_account(self, conn: sqlite3.Connection, account_id: str) -> None:
        conn.execute("""
            INSERT OR IGNORE INTO credit_account
            (account_id, remaining, total_consumed, total_granted, total_spent, created_at)
            VALUES (?, ?, 0, 0, 0, ?)
        """, (account_id, self.free_credits, datetime.now().isoformat()))

    @staticmethod
    def _remaining(conn: sqlite3.Connection, account_id: str) -> int:
        row = conn.execute(
            "SELECT remaining FROM credit_account WHERE account_id = ?", (account_id,)
        ).fetchone()
        return row[0]

    def _decrement(self, conn: sqlite3.Connection, account_id: str) -> bool:
        cursor = conn.execute("""
            UPDATE credit_account
            SET remaining = remaining - 1, total_consumed = total_consumed + 1
            WHERE account_id = ? AND remaining > 0
        """, (account_id,))
        return cursor.rowcount == 1

    def peek(self, identity: Identity) -> int:
        """Read the balance; unseen accounts report the free allotment."""
        balance = self.get_balance(identity)
        if balance is None:
            return self.free_credits
        return balance.remaining

    def get_balance(self, identity: Identity) -> Optional[CreditBalance]:
        """Get the stored balance row, or None if the account was never charged or granted."""
        account_id = self._account_id(identity)
        with self._read() as conn:
            row = conn.execute("""
                SELECT account_id, remaining, total_consumed, total_granted,
                       total_spent, created_at
                FROM credit_account WHERE account_id = ?
            """, (account_id,)).fetchone()
        if row is None:
            return None
        return CreditBalance(
            account_id=row[0],
            remaining=row[1],
            total_consumed=row[2],
            total_granted=row[3],
            total_spent=float(row[4]),
            created_at=datetime.fromisoformat(row[5])
        )

    def check_and_decrement(self, identity: Identity) -> GateDecision:
        """Consume one credit if the account has any left.

        Returns:
            GateDecision with the post-decrement balance, or allowed=False
            and an unchanged balance when the account is empty

        Raises:
            LedgerUnavailable: If the database cannot be reached
        """
        account_id = self._account_id(identity)
        with self._transaction() as conn:
            self._ensure_account(conn, account_id)
            allowed = self._decrement(conn, account_id)
            remaining = self._remaining(conn, account_id)
        return GateDecision(allowed=allowed, remaining=remaining, ledger=self.name)

    def settle_attempt(self, identity: Identity, attempt_id: str) -> GateDecision:
        """Charge one credit for a race that was gated by another store.

        Settlement is recorded per attempt id, so settling the same attempt
        twice charges at most once. An empty account is settled without
        charging rather than going negative.
        """
        account_id = self._account_id(identity)
        with self._transaction() as conn:
            self._ensure_account(conn, account_id)
            cursor = conn.execute("""
                INSERT OR IGNORE INTO credit_settlement (attempt_id, account_id, charged, timestamp)
                VALUES (?, ?, 0, ?)
            """, (attempt_id, account_id, datetime.now().isoformat()))
            if cursor.rowcount == 0:
                return GateDecision(
                    allowed=False,
                    remaining=self._remaining(conn, account_id),
                    ledger=self.name
                )
            charged = self._decrement(conn, account_id)
            if charged:
                conn.execute(
                    "UPDATE credit_settlement SET charged = 1 WHERE attempt_id = ?", (attempt_id,)
                )
            remaining = self._remaining(conn, account_id)
        return GateDecision(allowed=charged, remaining=remaining, ledger=self.name)

    def grant(self, identity: Identity, amount: int, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Add purchased credits and log the purchase.

        Args:
            identity: Account to credit
            amount: Number of credits, must be > 0
            metadata: Optional {"amount_paid", "payment_reference"}

        Returns:
            Balance after the grant
        """
        validate_grant_amount(amount)
        account_id = self._account_id(identity)
        metadata = metadata or {}
        amount_paid = metadata.get("amount_paid")
        with self._transaction() as conn:
            self._ensure_account(conn, account_id)
            conn.execute("""
                UPDATE credit_account
                SET remaining = remaining + ?, total_granted = total_granted + ?,
                    total_spent = total_spent + ?
                WHERE account_id = ?
            """, (amount, amount, float(amount_paid or 0), account_id))
            conn.execute("""
                INSERT INTO credit_purchase
                (account_id, credits, amount_paid, payment_reference, timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, (
                account_id,
                amount,
                amount_paid,
                metadata.get("payment_reference"),
                datetime.now().isoformat()
            ))
            remaining = self._remaining(conn, account_id)
        logger.info("Granted %d credits to account %s", amount, account_id)
        return remaining

    def list_purchases(self, identity: Identity) -> List[Purchase]:
        """Return the account's purchases, newest first."""
        account_id = self._account_id(identity)
        with self._read() as conn:
            rows = conn.execute("""
                SELECT account_id, credits, amount_paid, payment_reference, timestamp
                FROM credit_purchase WHERE account_id = ?
                ORDER BY timestamp DESC, id DESC
            """, (account_id,)).fetchall()
        return [
            Purchase(
                account_id=row[0],
                credits=row[1],
                amount_paid=row[2],
                payment_reference=row[3],
                timestamp=datetime.fromisoformat(row[4])
            )
            for row in rows
        ]


def identity_key(identity: Identity) -> str:
    """Stable key for logging a race against an identity."""
    if identity.is_account:
        return f"account:{identity.account_id}"
    return f"anon:{identity.anonymous_token}"


class RaceHistoryRepository:
    """Append-only analytics log of completed races."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def record_race(self, identity: Identity, attempt) -> None:
        """Insert a race and its per-backend entries in one transaction.

        Args:
            identity: Identity that ran the race
            attempt: Completed race attempt with results and winner_id
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                INSERT INTO race_log
                (attempt_id, identity_key, prompt, winner_id, total_time_ms, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                attempt.attempt_id,
                identity_key(identity),
                attempt.prompt,
                attempt.winner_id,
                attempt.total_time_ms,
                attempt.started_at.isoformat()
            ))
            winner = resolve_winner_index(attempt.results, attempt.winner_id, attempt.winner_index)
            for index, result in enumerate(attempt.results):
                conn.execute("""
                    INSERT INTO race_entry
                    (attempt_id, backend_id, elapsed_ms, winner, error_kind)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    attempt.attempt_id,
                    result.backend_id,
                    result.elapsed_ms,
                    int(index == winner),
                    result.error_kind.value if result.error_kind else None
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_races(self, identity: Identity, limit: int = 10) -> List[RaceRecord]:
        """Fetch an identity's most recent races, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT attempt_id, identity_key, prompt, winner_id, total_time_ms, timestamp
                FROM race_log WHERE identity_key = ?
                ORDER BY timestamp DESC LIMIT ?
            """, (identity_key(identity), limit)).fetchall()
            records = []
            for row in rows:
                entries = [
                    RaceEntry(
                        backend_id=entry[0],
                        elapsed_ms=entry[1],
                        winner=bool(entry[2]),
                        error_kind=entry[3]
                    )
                    for entry in conn.execute("""
                        SELECT backend_id, elapsed_ms, winner, error_kind
                        FROM race_entry WHERE attempt_id = ? ORDER BY id
                    """, (row[0],)).fetchall()
                ]
                records.append(RaceRecord(
                    attempt_id=row[0],
                    identity_key=row[1],
                    prompt=row[2],
                    winner_id=row[3],
                    total_time_ms=row[4],
                    timestamp=datetime.fromisoformat(row[5]),
                    entries=entries
                ))
            return records
        finally:
            conn.close()
