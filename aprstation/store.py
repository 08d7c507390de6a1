"""SQLite-backed store for heard stations, packets and counters."""

from __future__ import annotations

import math
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Mapping

from .records import (
    LoggedPacket,
    PacketCounts,
    PacketPosition,
    Source,
    Station,
    StorageStats,
    TopSource,
)

_INT64_MAX = (1 << 63) - 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS stations (
    callsign     TEXT PRIMARY KEY,
    last_seen    INTEGER NOT NULL,
    last_path    TEXT,
    last_info    TEXT,
    last_dest    TEXT,
    last_source  TEXT,
    last_seen_rf INTEGER,
    lat          REAL,
    lon          REAL,
    symbol       TEXT,
    comment      TEXT,
    pkt_count    INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_stations_last_seen ON stations(last_seen DESC);
CREATE INDEX IF NOT EXISTS idx_stations_last_seen_rf ON stations(last_seen_rf DESC);

CREATE TABLE IF NOT EXISTS messages (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    ts           INTEGER NOT NULL,
    direction    TEXT NOT NULL CHECK (direction IN ('out','in')),
    source       TEXT NOT NULL,
    dest         TEXT NOT NULL,
    body         TEXT NOT NULL,
    msg_id       TEXT,
    via_rf       INTEGER NOT NULL DEFAULT 0,
    via_is       INTEGER NOT NULL DEFAULT 0,
    acked        INTEGER NOT NULL DEFAULT 0,
    raw          TEXT,
    state        TEXT NOT NULL DEFAULT 'acked',
    attempts     INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(ts DESC);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(source, dest);

CREATE TABLE IF NOT EXISTS packets (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    ts           INTEGER NOT NULL,
    source       TEXT NOT NULL,
    dest         TEXT,
    path         TEXT,
    info         TEXT,
    src_kind     TEXT,
    raw          TEXT,
    lat          REAL,
    lon          REAL
);
CREATE INDEX IF NOT EXISTS idx_packets_source_ts ON packets(source, ts DESC);
CREATE INDEX IF NOT EXISTS idx_packets_ts ON packets(ts DESC);
CREATE INDEX IF NOT EXISTS idx_packets_pos_ts ON packets(ts) WHERE lat IS NOT NULL;

CREATE TABLE IF NOT EXISTS counters (
    name  TEXT PRIMARY KEY,
    value INTEGER NOT NULL DEFAULT 0
);
"""

# Tuned for SD-card-backed deploys: WAL without per-commit fsync, a large
# page cache, in-memory temp storage and memory-mapped reads.
_PRAGMAS = (
    "PRAGMA busy_timeout = 5000",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA cache_size = -16000",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA mmap_size = 67108864",
)


def _unix(t: datetime) -> int:
    return math.floor(t.timestamp())


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class Store:
    """Persistent store handle. Safe to share between threads."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        path = os.fspath(path)
        os.makedirs(os.path.dirname(path) or ".", mode=0o700, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path, timeout=5.0, isolation_level=None, check_same_thread=False
        )
        try:
            for pragma in _PRAGMAS:
                self._conn.execute(pragma)
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error:
            self._conn.close()
            raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; roll back if it raises.

        Transactions do not nest.
        """
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def upsert_heard(
        self,
        callsign: str,
        t: datetime,
        path: str,
        info: str,
        dest: str,
        src: Source,
        lat: float | None = None,
        lon: float | None = None,
        symbol: str = "",
        comment: str = "",
    ) -> None:
        """Record or update a station from a received packet."""
        callsign = callsign.upper()
        src = Source(src)
        seen_rf = _unix(t) if src is Source.RF else None
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO stations (callsign, last_seen, last_path, last_info, last_dest,
                       last_source, last_seen_rf, pkt_count)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                   ON CONFLICT(callsign) DO UPDATE SET
                       last_seen = excluded.last_seen,
                       last_path = excluded.last_path,
                       last_info = excluded.last_info,
                       last_dest = excluded.last_dest,
                       last_source = excluded.last_source,
                       last_seen_rf = COALESCE(excluded.last_seen_rf, stations.last_seen_rf),
                       pkt_count = pkt_count + 1""",
                (callsign, _unix(t), path, info, dest, src.value, seen_rf),
            )
            if lat is not None and lon is not None:
                conn.execute(
                    """UPDATE stations SET lat=?, lon=?,
                           symbol=COALESCE(NULLIF(?, ''), symbol),
                           comment=COALESCE(NULLIF(?, ''), comment)
                       WHERE callsign=?""",
                    (lat, lon, symbol, comment, callsign),
                )
            elif symbol or comment:
                conn.execute(
                    """UPDATE stations SET symbol=COALESCE(NULLIF(?, ''), symbol),
                           comment=COALESCE(NULLIF(?, ''), comment)
                       WHERE callsign=?""",
                    (symbol, comment, callsign),
                )

    def heard_since(self, cutoff: datetime, query: str = "") -> list[Station]:
        """Stations seen since cutoff, newest first, optionally filtered by a
        case-insensitive substring of the callsign or comment."""
        base = """SELECT callsign, last_seen, COALESCE(last_path, ''), COALESCE(last_info, ''),
                      COALESCE(last_dest, ''), COALESCE(last_source, ''), last_seen_rf,
                      lat, lon, COALESCE(symbol, ''), COALESCE(comment, ''), pkt_count
                  FROM stations WHERE last_seen >= ?"""
        q = query.strip()
        with self._lock:
            if q:
                like = f"%{q}%"
                rows = self._conn.execute(
                    base + " AND (callsign LIKE ? OR comment LIKE ?) ORDER BY last_seen DESC",
                    (_unix(cutoff), like, like),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    base + " ORDER BY last_seen DESC", (_unix(cutoff),)
                ).fetchall()
        return [
            Station(
                callsign=r[0],
                last_seen=_from_unix(r[1]),
                last_path=r[2],
                last_info=r[3],
                last_dest=r[4],
                last_source=r[5],
                last_seen_rf=None if r[6] is None else _from_unix(r[6]),
                lat=r[7],
                lon=r[8],
                symbol=r[9],
                comment=r[10],
                pkt_count=r[11],
            )
            for r in rows
        ]

    def count_packets_since(self, since: datetime | None = None) -> PacketCounts:
        """Packet counts by source kind newer than ``since``; None means all time."""
        with self._lock:
            if since is None:
                rows = self._conn.execute(
                    "SELECT COALESCE(src_kind,''), COUNT(*) FROM packets GROUP BY src_kind"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT COALESCE(src_kind,''), COUNT(*) FROM packets WHERE ts >= ? "
                    "GROUP BY src_kind",
                    (_unix(since),),
                ).fetchall()
        by_kind = dict(rows)
        return PacketCounts(
            rf=by_kind.get("RF", 0),
            is_=by_kind.get("IS", 0),
            tx=by_kind.get("TX", 0),
            total=sum(by_kind.values()),
        )

    def top_sources_since(self, since: datetime, limit: int = 10) -> list[TopSource]:
        """The sources with the most packets since ``since``, descending."""
        if limit <= 0:
            limit = 10
        with self._lock:
            rows = self._conn.execute(
                """SELECT source, COUNT(*) AS n FROM packets WHERE ts >= ?
                   GROUP BY source ORDER BY n DESC LIMIT ?""",
                (_unix(since), limit),
            ).fetchall()
        return [TopSource(source=s, count=n) for s, n in rows]

    def packet_storage_stats(self) -> StorageStats:
        """Total packet rows plus oldest and newest timestamps."""
        with self._lock:
            total, oldest, newest = self._conn.execute(
                "SELECT COUNT(*), COALESCE(MIN(ts),0), COALESCE(MAX(ts),0) FROM packets"
            ).fetchone()
        return StorageStats(
            total_packets=total,
            oldest_time=_from_unix(oldest) if oldest else None,
            newest_time=_from_unix(newest) if newest else None,
        )

    def count_heard_on_rf(self, since: datetime) -> int:
        """Number of distinct stations heard via RF since ``since``."""
        try:
            with self._lock:
                (n,) = self._conn.execute(
                    "SELECT COUNT(*) FROM stations WHERE last_seen_rf >= ?", (_unix(since),)
                ).fetchone()
        except sqlite3.Error:
            return 0
        return n

    def heard_on_rf(self, callsign: str, since: datetime) -> bool:
        """Whether ``callsign`` has been heard via RF since ``since``."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT last_seen_rf FROM stations WHERE UPPER(callsign) = UPPER(?)",
                    (callsign,),
                ).fetchone()
        except sqlite3.Error:
            return False
        if row is None or row[0] is None:
            return False
        return row[0] >= _unix(since)

    def prune(self, cutoff: datetime) -> int:
        """Delete stations, messages and packets older than cutoff in one
        transaction; returns the number of rows removed."""
        c = _unix(cutoff)
        with self.transaction() as conn:
            removed = conn.execute("DELETE FROM stations WHERE last_seen < ?", (c,)).rowcount
            removed += conn.execute("DELETE FROM messages WHERE ts < ?", (c,)).rowcount
            removed += conn.execute("DELETE FROM packets WHERE ts < ?", (c,)).rowcount
        return removed

    def log_packet(
        self,
        ts: datetime,
        source: str,
        dest: str,
        path: str,
        info: str,
        src: Source,
        raw: str,
        lat: float | None = None,
        lon: float | None = None,
    ) -> None:
        """Insert a packet row; lat/lon are stored as NULL when absent."""
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO packets (ts, source, dest, path, info, src_kind, raw, lat, lon)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (_unix(ts), source, dest, path, info, Source(src).value, raw, lat, lon),
            )

    def packet_positions_since(self, since: datetime) -> list[PacketPosition]:
        """Every packet position newer than ``since``, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT source, lat, lon, ts FROM packets
                   WHERE ts >= ? AND lat IS NOT NULL AND lon IS NOT NULL
                   ORDER BY ts ASC""",
                (_unix(since),),
            ).fetchall()
        return [
            PacketPosition(source=s, lat=lat, lon=lon, time=_from_unix(ts))
            for s, lat, lon, ts in rows
        ]

    def packets_by_source(self, source: str, limit: int = 2000) -> list[LoggedPacket]:
        """The most recent packets from ``source``, newest first."""
        if limit <= 0 or limit > 2000:
            limit = 2000
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, ts, source, COALESCE(dest, ''), COALESCE(path, ''),
                          COALESCE(info, ''), COALESCE(src_kind, ''), COALESCE(raw, '')
                   FROM packets WHERE source = ? ORDER BY ts DESC LIMIT ?""",
                (source, limit),
            ).fetchall()
        return [
            LoggedPacket(
                id=r[0],
                time=_from_unix(r[1]),
                source=r[2],
                dest=r[3],
                path=r[4],
                info=r[5],
                src_kind=r[6],
                raw=r[7],
            )
            for r in rows
        ]

    def load_counters(self) -> dict[str, int]:
        """All persisted counters; negative values read back as zero."""
        with self._lock:
            rows = self._conn.execute("SELECT name, value FROM counters").fetchall()
        return {name: max(value, 0) for name, value in rows}

    def save_counters(self, values: Mapping[str, int]) -> None:
        """Upsert every counter in one transaction, clamping to the signed
        64-bit maximum."""
        if not values:
            return
        for name, value in values.items():
            if value < 0:
                raise ValueError(f"counter {name!r} is negative: {value}")
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO counters(name, value) VALUES(?, ?)
                   ON CONFLICT(name) DO UPDATE SET value=excluded.value""",
                [(name, min(value, _INT64_MAX)) for name, value in values.items()],
            )