"""SQLite ``query_log`` table: ingested query events for the ``/logs`` fallback."""

import logging
import sqlite3
import time
import zlib
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

from dnsbridge.logparser import QueryEvent

logger = logging.getLogger("dnsbridge.query_db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS query_log (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    client_ip TEXT DEFAULT '',
    domain TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    response_time INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_query_log_timestamp ON query_log(timestamp);
"""

_INSERT = (
    "INSERT OR IGNORE INTO query_log "
    "(id, timestamp, client_ip, domain, type, status, response_time) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)

BATCH_SIZE = 500


def _row(event: QueryEvent, occurrence: int) -> tuple:
    d = event.to_dict()
    millis = int(event.timestamp.timestamp() * 1000)
    # Keyed on content plus its repeat count within one run, so re-ingesting
    # the same log is idempotent while identical same-second queries stay apart
    content = f"{event.client_ip}|{event.domain}|{event.type}|{event.status}"
    key = f"{millis}-{occurrence}-{zlib.crc32(content.encode()):08x}"
    return (key, d["timestamp"], event.client_ip, event.domain, event.type,
            event.status, event.response_time_ms)


class QueryLogDB:
    """Events table in the bridge's local database."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        return conn

    def insert_events(self, events: Iterable[QueryEvent]) -> int:
        """Insert events in batches. Returns the number of new rows."""
        conn = self._connect()
        inserted = 0
        batch: list[tuple] = []
        seen: Counter[tuple] = Counter()
        try:
            for event in events:
                ident = (event.timestamp, event.client_ip, event.domain, event.type, event.status)
                batch.append(_row(event, seen[ident]))
                seen[ident] += 1
                if len(batch) >= BATCH_SIZE:
                    inserted += self._flush(conn, batch)
                    batch.clear()
            if batch:
                inserted += self._flush(conn, batch)
        finally:
            conn.close()
        return inserted

    @staticmethod
    def _flush(conn: sqlite3.Connection, batch: list[tuple]) -> int:
        before = conn.total_changes
        with conn:
            conn.executemany(_INSERT, batch)
        return conn.total_changes - before

    def recent_events(self, limit: int = 50) -> list[dict]:
        """Newest ingested events as API dicts. Missing DB or table yields []."""
        if not self.db_path.exists():
            return []
        try:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=5.0)
        except sqlite3.Error as e:
            logger.debug("Cannot open %s read-only: %s", self.db_path, e)
            return []
        try:
            cur = conn.execute(
                "SELECT id, timestamp, client_ip, domain, type, status, response_time "
                "FROM query_log ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            )
            rows = cur.fetchall()
        except sqlite3.Error as e:
            logger.debug("query_log unavailable: %s", e)
            return []
        finally:
            conn.close()
        return [
            {
                "id": row[0],
                "timestamp": row[1],
                "clientIp": row[2],
                "domain": row[3],
                "type": row[4],
                "status": row[5],
                "responseTime": row[6] or 0,
            }
            for row in rows
        ]

    def count(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM query_log").fetchone()[0]
        finally:
            conn.close()

    def rotate(self, retention_days: int) -> int:
        """Delete entries older than ``retention_days``. Returns number deleted."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        cutoff_str = cutoff.strftime("%Y-%m-%dT%H:%M:%S.000Z")
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute("DELETE FROM query_log WHERE timestamp < ?", (cutoff_str,))
            deleted = cur.rowcount
        finally:
            conn.close()
        if deleted > 0:
            logger.info("Rotated %d old query log entries", deleted)
        return deleted

    def ingest(self, events: list[QueryEvent], retention_days: int) -> dict:
        """One ingestion run: insert, then prune. Returns a summary dict."""
        started = time.monotonic()
        inserted = self.insert_events(events)
        deleted = self.rotate(retention_days)
        logger.info("Ingested %d new events (%d parsed), pruned %d", inserted, len(events), deleted)
        return {
            "parsed": len(events),
            "inserted": inserted,
            "pruned": deleted,
            "elapsedMs": int((time.monotonic() - started) * 1000),
        }
