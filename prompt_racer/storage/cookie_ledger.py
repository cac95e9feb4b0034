"""
Anonymous credit ledger backed by signed cookies.

The balance lives in a cookie value signed with itsdangerous, so clients
can carry it but not forge it. Server-side, cookie values are held in a
CookieJar whose compare-and-set is the only way to change a balance.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from itsdangerous import BadSignature, URLSafeSerializer

from prompt_racer.core.credits import (
    FREE_CREDITS,
    CreditLedger,
    GateDecision,
    Identity,
    LedgerUnavailable,
    validate_grant_amount,
)

from .db import get_connection

logger = logging.getLogger(__name__)

COOKIE_NAME = "pr_credits"
COOKIE_SALT = "prompt-racer-credits"
COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 365  # 1 year


class CookieJar:
    """Signed cookie values keyed by anonymous token.

    Without a path, values live in memory behind a lock. With a path, they
    live in a SQLite table so several CLI processes share one jar; each
    swap is a single conditional INSERT or UPDATE on that token's row.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise LedgerUnavailable(CookieLedger.name, f"cannot create cookie jar {self.path}: {e}") from e
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cookie_jar (
                        token TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(str(self.path))
        except sqlite3.Error as e:
            raise LedgerUnavailable(CookieLedger.name, f"cannot open cookie jar {self.path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailable(CookieLedger.name, f"cookie jar {self.path}: {e}") from e
        finally:
            conn.close()

    def get(self, token: str) -> Optional[str]:
        """Return the raw cookie value for a token."""
        if self.path is None:
            with self._lock:
                return self._values.get(token)
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM cookie_jar WHERE token = ?", (token,)).fetchone()
        return row[0] if row else None

    def set(self, token: str, value: str) -> None:
        """Store a raw cookie value as received from a client."""
        if self.path is None:
            with self._lock:
                self._values[token] = value
            return
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cookie_jar (token, value) VALUES (?, ?)", (token, value)
            )

    def compare_and_set(self, token: str, expected: Optional[str], new: str) -> bool:
        """Replace a value only if it still equals expected.

        Returns:
            True if the swap happened, False if another writer got there first
        """
        if self.path is None:
            with self._lock:
                if self._values.get(token) != expected:
                    return False
                self._values[token] = new
                return True
        with self._connect() as conn:
            if expected is None:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO cookie_jar (token, value) VALUES (?, ?)", (token, new)
                )
            else:
                cursor = conn.execute(
                    "UPDATE cookie_jar SET value = ? WHERE token = ? AND value = ?",
                    (new, token, expected)
                )
        return cursor.rowcount == 1


class CookieLedger(CreditLedger):
    """Credit ledger for anonymous visitors.

    A missing cookie means a new visitor with the free allotment. A cookie
    that fails signature checks is treated as an empty balance.
    """

    name = "cookie"

    def __init__(
        self,
        secret_key: str,
        jar: Optional[CookieJar] = None,
        free_credits: int = FREE_CREDITS,
        max_age_seconds: int = COOKIE_MAX_AGE_SECONDS
    ):
        if not secret_key:
            raise ValueError("secret_key is required and cannot be empty")
        self.serializer = URLSafeSerializer(secret_key, salt=COOKIE_SALT)
        self.jar = jar if jar is not None else CookieJar()
        self.free_credits = free_credits
        self.max_age_seconds = max_age_seconds

    @staticmethod
    def _token(identity: Identity) -> str:
        if not identity.anonymous_token:
            raise ValueError("cookie ledger requires an anonymous_token")
        return identity.anonymous_token

    def _decode(self, raw: Optional[str]) -> int:
        if raw is None:
            return self.free_credits
        try:
            value = self.serializer.loads(raw)
        except BadSignature:
            logger.warning("Rejected tampered credit cookie")
            return 0
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            return 0
        return value

    def _encode(self, remaining: int) -> str:
        return self.serializer.dumps(remaining)

    def peek(self, identity: Identity) -> int:
        """Read the balance from the cookie without writing it."""
        return self._decode(self.jar.get(self._token(identity)))

    def check_and_decrement(self, identity: Identity) -> GateDecision:
        """Consume one credit via compare-and-set on the jar."""
        token = self._token(identity)
        while True:
            raw = self.jar.get(token)
            current = self._decode(raw)
            if current <= 0:
                return GateDecision(allowed=False, remaining=0, ledger=self.name)
            if self.jar.compare_and_set(token, raw, self._encode(current - 1)):
                return GateDecision(allowed=True, remaining=current - 1, ledger=self.name)

    def grant(self, identity: Identity, amount: int, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Add credits to the cookie balance.

        Metadata is accepted for contract parity; cookies keep no purchase log.
        """
        validate_grant_amount(amount)
        token = self._token(identity)
        while True:
            raw = self.jar.get(token)
            updated = self._decode(raw) + amount
            if self.jar.compare_and_set(token, raw, self._encode(updated)):
                logger.info("Granted %d credits to anonymous cookie", amount)
                return updated

    def cookie_value(self, identity: Identity) -> str:
        """Signed value to send back to the client in a Set-Cookie header."""
        token = self._token(identity)
        raw = self.jar.get(token)
        if raw is None:
            return self._encode(self.free_credits)
        return raw

    def load_cookie(self, identity: Identity, value: str) -> None:
        """Adopt the cookie value a client sent with its request."""
        self.jar.set(self._token(identity), value)

    def cookie_attributes(self) -> Dict[str, Any]:
        """Attributes for setting the credit cookie."""
        return {
            "key": COOKIE_NAME,
            "max_age": self.max_age_seconds,
            "path": "/",
            "httponly": True,
            "samesite": "lax",
        }
