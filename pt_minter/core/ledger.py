"""SQLite points ledger: mint journal plus per-(device, owner) aggregate totals.

Every request that reaches the mint stage gets a journal row before anything
is broadcast. Once the transaction is signed the row moves to ``unknown`` and
keeps its hash, so an interrupted request still leaves something to look up.
The aggregate update and the journal's ``reconciled`` transition commit in
the same transaction, so a confirmed mint is counted at most once no matter
how many times reconciliation is replayed.
"""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path

import structlog

log = structlog.get_logger()


class MintStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"  # rejected before broadcast
    UNKNOWN = "unknown"  # signed and possibly broadcast, outcome not confirmed
    REVERTED = "reverted"
    MINTED = "minted"
    RECONCILED = "reconciled"
    RECONCILE_FAILED = "reconcile_failed"


# Confirmed on-chain but not yet counted in the aggregate totals
DEBT_STATUSES = (MintStatus.MINTED, MintStatus.RECONCILE_FAILED)

# A pending record this old never reached signing: the hash is journaled before broadcast
STALE_PENDING_SECONDS = 900


@dataclass
class MintRecord:
    mint_id: str
    publisher_name: str
    owner_address: str
    amount: str
    amount_units: str
    status: MintStatus
    tx_hash: str | None = None
    error: str | None = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "mintId": self.mint_id,
            "publisherName": self.publisher_name,
            "ownerAddress": self.owner_address,
            "amount": self.amount,
            "status": self.status.value,
            "txHash": self.tx_hash,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class PointTotals:
    publisher_name: str
    owner_address: str
    total_points: Decimal
    mint_count: int
    last_minted_at: int


_RECORD_COLUMNS = (
    "mint_id, publisher_name, owner_address, amount, amount_units, status, tx_hash, error, created_at, updated_at"
)


def _row_to_record(row: tuple) -> MintRecord:
    return MintRecord(
        mint_id=row[0],
        publisher_name=row[1],
        owner_address=row[2],
        amount=row[3],
        amount_units=row[4],
        status=MintStatus(row[5]),
        tx_hash=row[6],
        error=row[7],
        created_at=row[8],
        updated_at=row[9],
    )


class PointsLedger:
    """Durable accounting store for confirmed mints."""

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
            CREATE TABLE IF NOT EXISTS mint_records (
                mint_id         TEXT PRIMARY KEY,
                publisher_name  TEXT NOT NULL,
                owner_address   TEXT NOT NULL,
                amount          TEXT NOT NULL,
                amount_units    TEXT NOT NULL,
                status          TEXT NOT NULL,
                tx_hash         TEXT,
                error           TEXT,
                created_at      INTEGER NOT NULL,
                updated_at      INTEGER NOT NULL
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_mint_records_status ON mint_records(status)")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS point_totals (
                publisher_name  TEXT NOT NULL,
                owner_address   TEXT NOT NULL,
                total_points    TEXT NOT NULL,
                mint_count      INTEGER NOT NULL DEFAULT 0,
                last_minted_at  INTEGER NOT NULL,
                PRIMARY KEY (publisher_name, owner_address)
            )
        """)

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def open_mint(self, publisher_name: str, owner_address: str, amount: str, amount_units: int) -> str:
        """Journal a mint about to be submitted. Returns its mint id."""
        mint_id = uuid.uuid4().hex
        now = int(time.time())
        with self._lock:
            self._conn.execute(
                f"INSERT INTO mint_records ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)",
                (
                    mint_id,
                    publisher_name,
                    owner_address.lower(),
                    amount,
                    str(amount_units),
                    MintStatus.PENDING.value,
                    now,
                    now,
                ),
            )
        return mint_id

    def mark(
        self,
        mint_id: str,
        status: MintStatus,
        *,
        tx_hash: str | None = None,
        error: str | None = None,
        from_statuses: tuple[MintStatus, ...] | None = None,
    ) -> bool:
        """Move a journal record to ``status``; a None tx_hash keeps the stored one.

        A ``reconciled`` record is final and never moves again. With
        ``from_statuses`` the update only applies while the record is in one of
        them. Returns whether a record changed.
        """
        query = (
            "UPDATE mint_records SET status = ?, tx_hash = COALESCE(?, tx_hash), error = ?, updated_at = ? "
            "WHERE mint_id = ? AND status != ?"
        )
        params: list[object] = [status.value, tx_hash, error, int(time.time()), mint_id, MintStatus.RECONCILED.value]
        if from_statuses:
            query += f" AND status IN ({', '.join('?' for _ in from_statuses)})"
            params.extend(s.value for s in from_statuses)
        with self._lock:
            cursor = self._conn.execute(query, params)
        return cursor.rowcount > 0

    def get_record(self, mint_id: str) -> MintRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM mint_records WHERE mint_id = ?",
                (mint_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_by_status(
        self,
        *statuses: MintStatus,
        limit: int = 500,
        updated_before: int | None = None,
    ) -> list[MintRecord]:
        query = f"SELECT {_RECORD_COLUMNS} FROM mint_records WHERE status IN ({', '.join('?' for _ in statuses)})"
        params: list[object] = [s.value for s in statuses]
        if updated_before is not None:
            query += " AND updated_at <= ?"
            params.append(updated_before)
        query += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_unsettled(self, stale_after: int = STALE_PENDING_SECONDS, limit: int = 500) -> list[MintRecord]:
        """Records whose on-chain effect is not reflected in the totals yet.

        Confirmed debt and ``unknown`` mints always qualify; ``pending`` records
        only once they have sat untouched for ``stale_after`` seconds.
        """
        records = self.list_by_status(*DEBT_STATUSES, MintStatus.UNKNOWN, limit=limit)
        records += self.list_by_status(
            MintStatus.PENDING,
            limit=limit,
            updated_before=int(time.time()) - stale_after,
        )
        return sorted(records, key=lambda r: r.created_at)[:limit]

    def count_by_status(self, *statuses: MintStatus) -> int:
        placeholders = ", ".join("?" for _ in statuses)
        with self._lock:
            return self._conn.execute(
                f"SELECT COUNT(*) FROM mint_records WHERE status IN ({placeholders})",
                tuple(s.value for s in statuses),
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Aggregate totals
    # ------------------------------------------------------------------

    def apply_mint(self, mint_id: str) -> bool:
        """Add a confirmed mint to its aggregate row and mark it reconciled.

        Returns False if the mint was already applied. Raises ValueError for an
        unknown or unconfirmed mint id and sqlite3.Error if the write fails.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM mint_records WHERE mint_id = ?",
                    (mint_id,),
                ).fetchone()
                if row is None:
                    raise ValueError(f"Unknown mint id {mint_id}")
                record = _row_to_record(row)
                if record.status == MintStatus.RECONCILED:
                    self._conn.execute("ROLLBACK")
                    return False
                if record.status not in DEBT_STATUSES:
                    raise ValueError(f"Mint {mint_id} is {record.status.value}, not confirmed")

                now = int(time.time())
                current = self._conn.execute(
                    "SELECT total_points FROM point_totals WHERE publisher_name = ? AND owner_address = ?",
                    (record.publisher_name, record.owner_address),
                ).fetchone()
                total = Decimal(current[0]) if current else Decimal(0)
                total += Decimal(record.amount)
                self._conn.execute(
                    "INSERT INTO point_totals (publisher_name, owner_address, total_points, mint_count, last_minted_at) "
                    "VALUES (?, ?, ?, 1, ?) "
                    "ON CONFLICT(publisher_name, owner_address) DO UPDATE SET "
                    "total_points = excluded.total_points, mint_count = mint_count + 1, "
                    "last_minted_at = excluded.last_minted_at",
                    (record.publisher_name, record.owner_address, str(total), now),
                )
                self._conn.execute(
                    "UPDATE mint_records SET status = ?, error = NULL, updated_at = ? WHERE mint_id = ?",
                    (MintStatus.RECONCILED.value, now, mint_id),
                )
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
        log.info(
            "points_applied",
            mint_id=mint_id,
            publisher_name=record.publisher_name,
            owner_address=record.owner_address,
            amount=record.amount,
            total=str(total),
        )
        return True

    def get_totals(self, publisher_name: str, owner_address: str) -> PointTotals | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT publisher_name, owner_address, total_points, mint_count, last_minted_at "
                "FROM point_totals WHERE publisher_name = ? AND owner_address = ?",
                (publisher_name, owner_address.lower()),
            ).fetchone()
        if row is None:
            return None
        return PointTotals(
            publisher_name=row[0],
            owner_address=row[1],
            total_points=Decimal(row[2]),
            mint_count=row[3],
            last_minted_at=row[4],
        )

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except Exception:
            pass
