"""SQLite store of single-use signing challenges, one live nonce per address.

The only mutation the mint path uses is :meth:`NonceStore.swap`, which reads
the current nonce and writes its replacement inside one ``BEGIN IMMEDIATE``
transaction. Two requests racing with the same signed nonce therefore cannot
both observe it: the loser sees the rotated value and fails the comparison.
"""

from __future__ import annotations

import math
import secrets
import sqlite3
import string
import threading
import time
from pathlib import Path

import structlog

log = structlog.get_logger()

_NONCE_ALPHABET = string.ascii_letters + string.digits
_NONCE_ENTROPY_BITS = 96


def generate_nonce() -> str:
    """Return an unpredictable alphanumeric nonce carrying 96 bits of entropy."""
    length = math.ceil(_NONCE_ENTROPY_BITS / math.log2(len(_NONCE_ALPHABET)))
    return "".join(secrets.choice(_NONCE_ALPHABET) for _ in range(length))


def _key(address: str) -> str:
    return address.lower()


class NonceStore:
    """SQLite-backed claimant -> nonce mapping.

    Follows the same pattern as the other stores for SQLite lifecycle
    management, but runs the connection in autocommit mode so the swap can
    open its own immediate transaction.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
            self._conn.execute("PRAGMA journal_mode=WAL")
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS t_nonces (
                public_address TEXT PRIMARY KEY,
                nonce          TEXT NOT NULL,
                updated_at     INTEGER NOT NULL
            )
        """)

    def get(self, address: str) -> str | None:
        """Return the live nonce for ``address``, or None if it was never issued."""
        with self._lock:
            row = self._conn.execute(
                "SELECT nonce FROM t_nonces WHERE public_address = ?",
                (_key(address),),
            ).fetchone()
        return row[0] if row else None

    def issue(self, address: str, nonce: str | None = None) -> str:
        """Create or replace the nonce for ``address`` (onboarding path)."""
        nonce = nonce or generate_nonce()
        with self._lock:
            self._conn.execute(
                "INSERT INTO t_nonces (public_address, nonce, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(public_address) DO UPDATE SET nonce = excluded.nonce, updated_at = excluded.updated_at",
                (_key(address), nonce, int(time.time())),
            )
        log.info("nonce_issued", address=address)
        return nonce

    def swap(self, address: str, new_nonce: str) -> str | None:
        """Atomically replace the nonce for ``address`` and return the previous one.

        Returns None, without writing anything, when the address has no nonce.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT nonce FROM t_nonces WHERE public_address = ?",
                    (_key(address),),
                ).fetchone()
                if row is None:
                    self._conn.execute("ROLLBACK")
                    return None
                self._conn.execute(
                    "UPDATE t_nonces SET nonce = ?, updated_at = ? WHERE public_address = ?",
                    (new_nonce, int(time.time()), _key(address)),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        log.debug("nonce_rotated", address=address)
        return row[0]

    @property
    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM t_nonces").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except Exception:
            pass
