"""SQLite-backed device registry and owner bindings.

The mint path only reads from here. Devices and bindings are written by the
provisioning process (and by tests) through :meth:`DeviceRegistry.upsert_device`
and :meth:`DeviceRegistry.bind`.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class DeviceRecord:
    id: int
    publisher_name: str
    initialized: bool


class DeviceRegistry:
    """Device records and (owner address, device) bindings."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS device_info (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                publisher_name  TEXT NOT NULL UNIQUE,
                initialized     INTEGER NOT NULL DEFAULT 0,
                created_at      INTEGER NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS device_binding (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_address   TEXT NOT NULL,
                publisher_name  TEXT NOT NULL,
                created_at      INTEGER NOT NULL,
                UNIQUE (owner_address, publisher_name)
            )
        """)
        self._conn.commit()

    def get_device(self, publisher_name: str) -> DeviceRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, publisher_name, initialized FROM device_info WHERE publisher_name = ?",
                (publisher_name,),
            ).fetchone()
        if row is None:
            return None
        return DeviceRecord(id=row[0], publisher_name=row[1], initialized=bool(row[2]))

    def find_bindings(self, owner_address: str, publisher_name: str) -> list[int]:
        """Return the ids of bindings between ``owner_address`` and the device."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM device_binding WHERE owner_address = ? AND publisher_name = ?",
                (owner_address.lower(), publisher_name),
            ).fetchall()
        return [r[0] for r in rows]

    def upsert_device(self, publisher_name: str, initialized: bool = False) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO device_info (publisher_name, initialized, created_at) VALUES (?, ?, ?) "
                "ON CONFLICT(publisher_name) DO UPDATE SET initialized = excluded.initialized",
                (publisher_name, int(initialized), int(time.time())),
            )
            self._conn.commit()
        log.info("device_upserted", publisher_name=publisher_name, initialized=initialized)

    def bind(self, owner_address: str, publisher_name: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO device_binding (owner_address, publisher_name, created_at) VALUES (?, ?, ?)",
                (owner_address.lower(), publisher_name, int(time.time())),
            )
            self._conn.commit()
        log.info("device_bound", owner_address=owner_address, publisher_name=publisher_name)

    @property
    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM device_info").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except Exception:
            pass
