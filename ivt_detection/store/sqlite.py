from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ..core.exceptions import StoreError, StoreUnavailableError
from ..core.models import Impression, ImpressionUpdate, IPFrequencyRecord
from .base import EventStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ivt_impressions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    pub_id TEXT,
    bundle TEXT,
    ifa TEXT,
    ip TEXT,
    user_agent TEXT,
    device_make TEXT,
    device_model TEXT,
    os TEXT,
    os_version TEXT,
    creative_id TEXT,
    is_suspicious INTEGER DEFAULT 0,
    ivt_reasons TEXT DEFAULT '[]',
    ivt_score INTEGER DEFAULT 0,
    analyzed_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_ivt_timestamp ON ivt_impressions(timestamp);
CREATE INDEX IF NOT EXISTS idx_ivt_ip ON ivt_impressions(ip);
CREATE INDEX IF NOT EXISTS idx_ivt_ifa ON ivt_impressions(ifa);
CREATE INDEX IF NOT EXISTS idx_ivt_bundle ON ivt_impressions(bundle);
CREATE INDEX IF NOT EXISTS idx_ivt_unanalyzed ON ivt_impressions(id) WHERE analyzed_at IS NULL;

CREATE TABLE IF NOT EXISTS ivt_ip_frequency (
    ip TEXT PRIMARY KEY,
    impression_count INTEGER DEFAULT 0,
    unique_bundles INTEGER DEFAULT 0,
    unique_devices INTEGER DEFAULT 0,
    is_flagged INTEGER DEFAULT 0,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS ivt_run_lease (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

_INSERT_COLUMNS = (
    "timestamp", "pub_id", "bundle", "ifa", "ip", "user_agent", "device_make",
    "device_model", "os", "os_version", "creative_id",
)


def _to_iso(dt: datetime) -> str:
    """UTC ISO-8601 text; naive datetimes are taken to be UTC already."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_impression(row: sqlite3.Row) -> Impression:
    data = dict(row)
    data.pop("created_at", None)
    data["is_suspicious"] = bool(data["is_suspicious"])
    data["ivt_reasons"] = json.loads(data["ivt_reasons"] or "[]")
    return Impression.model_validate(data)


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    return conn


class SQLiteEventStore(EventStore):
    """
    Local event store holding the ``ivt_impressions`` / ``ivt_ip_frequency``
    tables in one SQLite file.

    sqlite3 is blocking, so every call runs in a worker thread via
    ``asyncio.to_thread``; a lock serialises access to the single connection.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = _connect(self._db_path)
            with self._conn:
                self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open SQLite store at {self._db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.OperationalError as exc:
                if "no such table" in str(exc):
                    raise StoreUnavailableError(str(exc)) from exc
                raise StoreError(str(exc)) from exc
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    def _executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(sql, rows)
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    async def _run(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        return await asyncio.to_thread(self._execute, sql, params)

    # ------------------------------------------------------------------
    # EventStore
    # ------------------------------------------------------------------

    async def fetch_unanalyzed(self, limit: int) -> List[Impression]:
        rows = await self._run(
            "SELECT * FROM ivt_impressions WHERE analyzed_at IS NULL ORDER BY id ASC LIMIT ?",
            (limit,),
        )
        return [_row_to_impression(r) for r in rows]

    async def ifa_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        rows = await self._run(
            """
            SELECT ifa, COUNT(*) AS cnt FROM ivt_impressions
            WHERE timestamp >= ? AND timestamp < ? AND ifa IS NOT NULL AND ifa != ''
            GROUP BY ifa HAVING COUNT(*) > ?
            """,
            (_to_iso(start), _to_iso(end), min_count),
        )
        return {r["ifa"]: int(r["cnt"]) for r in rows}

    async def ip_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        rows = await self._run(
            """
            SELECT ip, COUNT(*) AS cnt FROM ivt_impressions
            WHERE timestamp >= ? AND timestamp < ? AND ip IS NOT NULL
            GROUP BY ip HAVING COUNT(*) > ?
            """,
            (_to_iso(start), _to_iso(end), min_count),
        )
        return {r["ip"]: int(r["cnt"]) for r in rows}

    async def update_impression(self, update: ImpressionUpdate) -> None:
        await self._run(
            """
            UPDATE ivt_impressions
            SET is_suspicious = ?, ivt_reasons = ?, ivt_score = ?, analyzed_at = ?
            WHERE id = ?
            """,
            (
                int(update.is_suspicious),
                json.dumps(update.ivt_reasons),
                update.ivt_score,
                _to_iso(update.analyzed_at),
                update.id,
            ),
        )

    async def upsert_ip_frequency(self, records: Sequence[IPFrequencyRecord]) -> None:
        if not records:
            return
        rows = [
            (
                r.ip,
                r.impression_count,
                r.unique_bundles,
                r.unique_devices,
                int(r.is_flagged),
                _to_iso(r.updated_at),
            )
            for r in records
        ]
        await asyncio.to_thread(
            self._executemany,
            """
            INSERT INTO ivt_ip_frequency
                (ip, impression_count, unique_bundles, unique_devices, is_flagged, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(ip) DO UPDATE SET
                impression_count = excluded.impression_count,
                unique_bundles = excluded.unique_bundles,
                unique_devices = excluded.unique_devices,
                is_flagged = excluded.is_flagged,
                updated_at = excluded.updated_at
            """,
            rows,
        )

    async def acquire_run_lease(self, owner: str, ttl_seconds: float) -> bool:
        """Take the single lease row unless another owner holds an unexpired one."""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(seconds=ttl_seconds)
        await self._run(
            """
            INSERT INTO ivt_run_lease (id, owner, expires_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
            WHERE ivt_run_lease.owner = excluded.owner OR ivt_run_lease.expires_at <= ?
            """,
            (owner, _to_iso(expires), _to_iso(now)),
        )
        rows = await self._run("SELECT owner FROM ivt_run_lease WHERE id = 1")
        return bool(rows) and rows[0]["owner"] == owner

    async def release_run_lease(self, owner: str) -> None:
        await self._run("DELETE FROM ivt_run_lease WHERE id = 1 AND owner = ?", (owner,))

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Ingestion contract and inspection helpers
    # ------------------------------------------------------------------

    async def insert_impressions(self, impressions: Iterable[Dict[str, Any]]) -> int:
        """
        Insert raw impressions the way the ingestion pixel does: analysis
        columns are left at their defaults. Returns the number of rows written.
        """
        rows = []
        for imp in impressions:
            ts = imp.get("timestamp") or datetime.now(timezone.utc)
            if isinstance(ts, str):
                ts = datetime.fromisoformat(ts)
            values = [_to_iso(ts)]
            values.extend(imp.get(col) for col in _INSERT_COLUMNS[1:])
            rows.append(values)
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        await asyncio.to_thread(
            self._executemany,
            f"INSERT INTO ivt_impressions ({', '.join(_INSERT_COLUMNS)}) VALUES ({placeholders})",
            rows,
        )
        return len(rows)

    async def get_impression(self, impression_id: int) -> Optional[Impression]:
        rows = await self._run("SELECT * FROM ivt_impressions WHERE id = ?", (impression_id,))
        return _row_to_impression(rows[0]) if rows else None

    async def ip_frequency_records(self) -> List[IPFrequencyRecord]:
        rows = await self._run("SELECT * FROM ivt_ip_frequency ORDER BY impression_count DESC")
        return [
            IPFrequencyRecord(
                ip=r["ip"],
                impression_count=r["impression_count"],
                unique_bundles=r["unique_bundles"],
                unique_devices=r["unique_devices"],
                is_flagged=bool(r["is_flagged"]),
                updated_at=datetime.fromisoformat(r["updated_at"]),
            )
            for r in rows
        ]
