"""
Unit tests for storage layer.

Tests schema creation, the account ledger and the race history log.
"""

import os
import tempfile
import sqlite3
import threading
from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from prompt_racer.core.credits import Identity, LedgerUnavailable
from prompt_racer.storage.db import get_connection
from prompt_racer.storage.repository import (
    AccountLedger,
    RaceHistoryRepository,
    identity_key,
    initialize_schema,
)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name NOT LIKE 'sqlite_%'
                    ORDER BY name
                """)
                tables = [row[0] for row in cursor.fetchall()]
                assert tables == [
                    "credit_account", "credit_purchase", "credit_settlement",
                    "race_entry", "race_log"
                ]

                cursor = conn.execute("PRAGMA table_info(credit_account)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'account_id', 'remaining', 'total_consumed', 'total_granted',
                    'total_spent', 'created_at'
                ]
            finally:
                conn.close()

    def test_schema_is_idempotent(self):
        """Initializing twice is harmless."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestConnection:
    """Test the connection factory."""

    def test_closes_connection_when_setup_fails(self):
        """A connection whose pragma fails is closed before the error propagates."""
        conn = Mock()
        conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")

        with patch("prompt_racer.storage.db.sqlite3.connect", return_value=conn):
            with pytest.raises(sqlite3.OperationalError):
                get_connection("racer.db")

        conn.close.assert_called_once()


class TestAccountLedger:
    """Test the account credit ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = AccountLedger(self.db_path)
        self.identity = Identity(account_id="user-1")

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_peek_does_not_grant(self):
        """Reading an unseen account reports the allotment without storing it."""
        assert self.ledger.peek(self.identity) == 3
        assert self.ledger.get_balance(self.identity) is None

    def test_decrement_creates_account(self):
        """The first race creates the row with the allotment minus one."""
        decision = self.ledger.check_and_decrement(self.identity)

        assert decision.allowed
        assert decision.remaining == 2
        assert decision.ledger == "account"
        balance = self.ledger.get_balance(self.identity)
        assert balance.remaining == 2
        assert balance.total_consumed == 1
        assert isinstance(balance.created_at, datetime)

    def test_zero_balance_denies_without_mutation(self):
        """Decrementing at zero returns denied and leaves counters alone."""
        ledger = AccountLedger(self.db_path, free_credits=0)

        for _ in range(3):
            decision = ledger.check_and_decrement(self.identity)
            assert not decision.allowed
            assert decision.remaining == 0

        balance = ledger.get_balance(self.identity)
        assert balance.remaining == 0
        assert balance.total_consumed == 0

    def test_never_goes_negative(self):
        """Exhausting credits stops at zero."""
        decisions = [self.ledger.check_and_decrement(self.identity) for _ in range(5)]

        assert [d.allowed for d in decisions] == [True, True, True, False, False]
        assert self.ledger.peek(self.identity) == 0

    def test_concurrent_decrement_on_last_credit(self):
        """Two simultaneous gates on one credit: exactly one is allowed."""
        ledger = AccountLedger(self.db_path, free_credits=1)
        barrier = threading.Barrier(2)
        decisions = []

        def gate():
            barrier.wait()
            decisions.append(ledger.check_and_decrement(self.identity))

        threads = [threading.Thread(target=gate) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(d.allowed for d in decisions) == [False, True]
        assert ledger.peek(self.identity) == 0

    def test_grant_adds_and_logs_purchase(self):
        """Grants add credits and append a purchase row."""
        remaining = self.ledger.grant(
            self.identity, 10, {"amount_paid": 2.99, "payment_reference": "cs_1"}
        )

        assert remaining == 13
        balance = self.ledger.get_balance(self.identity)
        assert balance.total_granted == 10
        assert balance.total_spent == pytest.approx(2.99)
        purchases = self.ledger.list_purchases(self.identity)
        assert len(purchases) == 1
        assert purchases[0].credits == 10
        assert purchases[0].payment_reference == "cs_1"

    def test_repeated_grant_is_not_deduplicated(self):
        """The same payment reference granted twice adds twice."""
        metadata = {"amount_paid": 4.99, "payment_reference": "cs_dup"}
        self.ledger.grant(self.identity, 25, metadata)
        remaining = self.ledger.grant(self.identity, 25, metadata)

        assert remaining == 53
        assert len(self.ledger.list_purchases(self.identity)) == 2

    def test_grant_without_metadata(self):
        """Metadata is optional."""
        assert self.ledger.grant(self.identity, 1) == 4
        assert self.ledger.list_purchases(self.identity)[0].amount_paid is None

    def test_grant_rejects_non_positive(self):
        """Zero or negative grants are invalid."""
        with pytest.raises(ValueError):
            self.ledger.grant(self.identity, 0)

    def test_requires_account_id(self):
        """Anonymous identities cannot use the account ledger."""
        with pytest.raises(ValueError, match="account_id"):
            self.ledger.check_and_decrement(Identity(anonymous_token="t1"))

    def test_settle_attempt_charges_once(self):
        """Settling the same attempt twice charges one credit."""
        first = self.ledger.settle_attempt(self.identity, "attempt-1")
        second = self.ledger.settle_attempt(self.identity, "attempt-1")

        assert first.allowed
        assert not second.allowed
        assert self.ledger.peek(self.identity) == 2

        self.ledger.settle_attempt(self.identity, "attempt-2")
        assert self.ledger.peek(self.identity) == 1

    def test_settle_attempt_at_zero(self):
        """Settlement on an empty account records the attempt without going negative."""
        ledger = AccountLedger(self.db_path, free_credits=0)

        decision = ledger.settle_attempt(self.identity, "attempt-1")

        assert not decision.allowed
        assert ledger.peek(self.identity) == 0

    def test_unreachable_database(self):
        """A database that cannot be opened reports LedgerUnavailable."""
        ledger = AccountLedger(os.path.join(self.temp_dir, "missing", "x.db"))

        with pytest.raises(LedgerUnavailable, match="account ledger unavailable"):
            ledger.check_and_decrement(self.identity)
        with pytest.raises(LedgerUnavailable):
            ledger.peek(self.identity)

    def test_peek_does_not_wait_for_writers(self):
        """Balance reads succeed while another connection holds the write lock."""
        self.ledger.check_and_decrement(self.identity)
        writer = get_connection(self.db_path)
        try:
            writer.execute("BEGIN IMMEDIATE")
            fast = AccountLedger(self.db_path)
            with patch("prompt_racer.storage.repository.get_connection",
                       lambda path: get_connection(path, timeout=0.1)):
                assert fast.peek(self.identity) == 2
                assert fast.list_purchases(self.identity) == []
        finally:
            writer.rollback()
            writer.close()

    def test_missing_schema(self):
        """An uninitialized database reports LedgerUnavailable."""
        ledger = AccountLedger(os.path.join(self.temp_dir, "empty.db"))

        with pytest.raises(LedgerUnavailable):
            ledger.grant(self.identity, 5)


class _Attempt:
    def __init__(self, attempt_id, results, winner_id, winner_index=None):
        self.attempt_id = attempt_id
        self.prompt = "Why is the sky blue?"
        self.results = results
        self.winner_id = winner_id
        self.winner_index = winner_index
        self.total_time_ms = max(r.elapsed_ms for r in results)
        self.started_at = datetime(2024, 1, 1, 12, 0, 0)


class TestRaceHistory:
    """Test the race analytics log."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.history = RaceHistoryRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_and_list(self):
        """Recorded races come back with their entries."""
        from prompt_racer.core.results import ErrorKind, ModelResult

        identity = Identity(account_id="user-1")
        results = [
            ModelResult("gpt-4o", "GPT-4o", "Rayleigh scattering", 900),
            ModelResult("grok-3", "Grok 3", "", 1500, ErrorKind.TIMEOUT),
        ]
        self.history.record_race(identity, _Attempt("att-1", results, "gpt-4o"))

        records = self.history.list_races(identity)
        assert len(records) == 1
        record = records[0]
        assert record.identity_key == "account:user-1"
        assert record.winner_id == "gpt-4o"
        assert record.total_time_ms == 1500
        assert [(e.backend_id, e.winner, e.error_kind) for e in record.entries] == [
            ("gpt-4o", True, None),
            ("grok-3", False, "timeout"),
        ]

    def test_duplicate_backend_has_one_winner(self):
        """A backend raced twice is marked the winner once, never on a failure."""
        from prompt_racer.core.results import ErrorKind, ModelResult

        identity = Identity(anonymous_token="t1")
        results = [
            ModelResult("claude-haiku-3.5", "Claude Haiku 3.5", "hi", 10),
            ModelResult("claude-haiku-3.5", "Claude Haiku 3.5", "", 5, ErrorKind.REQUEST_FAILED),
        ]
        self.history.record_race(identity, _Attempt("att-1", results, "claude-haiku-3.5"))

        entries = self.history.list_races(identity)[0].entries
        assert [(e.winner, e.error_kind) for e in entries] == [
            (True, None),
            (False, "request_failed"),
        ]

    def test_winner_index_picks_the_entry(self):
        """A known winning position marks exactly that entry."""
        from prompt_racer.core.results import ModelResult

        identity = Identity(anonymous_token="t1")
        results = [
            ModelResult("claude-haiku-3.5", "Claude Haiku 3.5", "slow", 300),
            ModelResult("claude-haiku-3.5", "Claude Haiku 3.5", "fast", 100),
        ]
        self.history.record_race(identity, _Attempt("att-1", results, "claude-haiku-3.5", 1))

        entries = self.history.list_races(identity)[0].entries
        assert [e.winner for e in entries] == [False, True]

    def test_list_filters_by_identity(self):
        """Races are listed per identity."""
        from prompt_racer.core.results import ModelResult

        results = [ModelResult("gpt-4o", "GPT-4o", "hi", 10)]
        self.history.record_race(Identity(anonymous_token="t1"), _Attempt("att-1", results, "gpt-4o"))

        assert self.history.list_races(Identity(anonymous_token="t2")) == []
        assert len(self.history.list_races(Identity(anonymous_token="t1"))) == 1

    def test_identity_key(self):
        """Account ids take precedence over tokens."""
        assert identity_key(Identity(account_id="u", anonymous_token="t")) == "account:u"
        assert identity_key(Identity(anonymous_token="t")) == "anon:t"
