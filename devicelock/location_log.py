"""
Local Location Log: append-only SQLite table of captured positions.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable

from .models import PositionPoint

logger = logging.getLogger("devicelock.location_log")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    accuracy REAL NOT NULL,
    timestamp INTEGER NOT NULL,
    date TEXT NOT NULL,
    time TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_locations_date ON locations(date);
CREATE INDEX IF NOT EXISTS idx_locations_synced ON locations(synced);
"""

_COLUMNS = "id, device_id, latitude, longitude, accuracy, timestamp, date, time, synced"


def _row_to_point(row: sqlite3.Row) -> PositionPoint:
    return PositionPoint(
        id=row["id"],
        device_id=row["device_id"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        accuracy=row["accuracy"],
        timestamp=row["timestamp"],
        date=row["date"],
        time=row["time"],
        synced=bool(row["synced"]),
    )


class LocationLog:
    def __init__(self, path: Path | str = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _scalar(self, sql: str, params: tuple = ()):
        rows = self._query(sql, params)
        return rows[0][0] if rows else None

    # ── writes ─────────────────────────────────────────────────────────

    def insert(self, point: PositionPoint) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO locations (device_id, latitude, longitude, accuracy, timestamp, date, time, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    point.device_id,
                    point.latitude,
                    point.longitude,
                    point.accuracy,
                    point.timestamp,
                    point.date,
                    point.time,
                    1 if point.synced else 0,
                ),
            )
            row_id = cur.lastrowid
        logger.debug(f"LOCATION_LOG | inserted id={row_id} date={point.date} time={point.time}")
        return row_id

    def mark_synced(self, ids: Iterable[int]) -> int:
        """Mark rows synced in a single transaction; returns rows updated."""
        ids = list(ids)
        if not ids:
            return 0
        updated = 0
        with self._lock, self._conn:
            for row_id in ids:
                cur = self._conn.execute("UPDATE locations SET synced = 1 WHERE id = ?", (row_id,))
                updated += cur.rowcount
        logger.debug(f"LOCATION_LOG | marked synced={updated}")
        return updated

    def delete_date(self, date: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM locations WHERE date = ?", (date,))
            return cur.rowcount

    def clear(self) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM locations")
            return cur.rowcount

    def enforce_retention(self, max_dates: int = 30) -> list[str]:
        """
        Rolling window: while more than `max_dates` distinct dates are stored,
        delete every row of the oldest date. Runs as one transaction.
        Returns the purged dates, oldest first.
        """
        purged: list[str] = []
        with self._lock, self._conn:
            while True:
                distinct = self._conn.execute("SELECT COUNT(DISTINCT date) FROM locations").fetchone()[0]
                if distinct <= max_dates:
                    break
                # 'DD-MM-YYYY' does not sort chronologically; go by timestamp.
                oldest = self._conn.execute(
                    "SELECT date FROM locations ORDER BY timestamp ASC, id ASC LIMIT 1"
                ).fetchone()[0]
                self._conn.execute("DELETE FROM locations WHERE date = ?", (oldest,))
                purged.append(oldest)
        if purged:
            logger.info(f"RETENTION | purged dates={purged} kept<={max_dates}")
        return purged

    # ── reads ──────────────────────────────────────────────────────────

    def unsynced(self) -> list[PositionPoint]:
        rows = self._query(f"SELECT {_COLUMNS} FROM locations WHERE synced = 0 ORDER BY timestamp ASC, id ASC")
        return [_row_to_point(r) for r in rows]

    def all(self) -> list[PositionPoint]:
        rows = self._query(f"SELECT {_COLUMNS} FROM locations ORDER BY timestamp DESC, id DESC")
        return [_row_to_point(r) for r in rows]

    def by_date(self, date: str) -> list[PositionPoint]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM locations WHERE date = ? ORDER BY timestamp ASC, id ASC", (date,)
        )
        return [_row_to_point(r) for r in rows]

    def distinct_dates(self) -> list[str]:
        rows = self._query("SELECT date, MIN(timestamp) AS first_ts FROM locations GROUP BY date ORDER BY first_ts ASC")
        return [r["date"] for r in rows]

    def distinct_dates_count(self) -> int:
        return self._scalar("SELECT COUNT(DISTINCT date) FROM locations") or 0

    def oldest_date(self) -> str | None:
        return self._scalar("SELECT date FROM locations ORDER BY timestamp ASC, id ASC LIMIT 1")

    def count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM locations") or 0

    def unsynced_count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM locations WHERE synced = 0") or 0
