import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import StoreError
from .models import Coverage, Event, SyncAttempt, SyncAttemptStatus, SyncKind
from .timeutil import from_epoch, to_epoch, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artist TEXT NOT NULL,
    title TEXT NOT NULL,
    album TEXT,
    artwork_url TEXT,
    source_url TEXT,
    played_at INTEGER NOT NULL,
    is_live INTEGER NOT NULL DEFAULT 0,
    scrobble_date TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE(artist, title, played_at)
);

CREATE INDEX IF NOT EXISTS idx_events_played_at ON events(played_at);
CREATE INDEX IF NOT EXISTS idx_events_scrobble_date ON events(scrobble_date);
CREATE INDEX IF NOT EXISTS idx_events_artist ON events(artist);
CREATE INDEX IF NOT EXISTS idx_events_date_artist ON events(scrobble_date, artist);
CREATE INDEX IF NOT EXISTS idx_events_album ON events(album);

CREATE TABLE IF NOT EXISTS sync_metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    watermark INTEGER,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    finished_at INTEGER,
    events_added INTEGER NOT NULL DEFAULT 0,
    remote_calls_made INTEGER NOT NULL DEFAULT 0,
    failed_units INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'running',
    error_message TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_attempts_started_at ON sync_attempts(started_at);
"""

_INSERT_EVENT = """
    INSERT OR IGNORE INTO events (
        artist, title, album, artwork_url, source_url,
        played_at, is_live, scrobble_date, created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
"""

_UPDATE_EVENT = """
    UPDATE events SET album = ?, artwork_url = ?, source_url = ?, scrobble_date = ?, updated_at = ?
    WHERE artist = ? AND title = ? AND played_at = ?
"""

_ATTEMPT_COLUMNS = {
    "finished_at": "finished_at",
    "events_added": "events_added",
    "remote_calls_made": "remote_calls_made",
    "failed_units": "failed_units",
    "status": "status",
    "error_message": "error_message",
}


class EventStore:
    """
    SQLite-backed replica of the listening history.

    All methods block until the statement completes and raise StoreError on any
    database failure.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = RLock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def initialize(self):
        if self._conn is not None:
            return
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreError("initialize", e) from e
        self._conn = conn
        logger.info(f"Opened event store at {self.db_path}")

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
                logger.info("Closed event store")
            except sqlite3.Error as e:
                logger.error(f"Error while closing event store: {e}")
            finally:
                self._conn = None

    @contextmanager
    def _cursor(self, operation: str, commit: bool = False) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            if self._conn is None:
                raise StoreError(operation, RuntimeError("store is not open"))
            cur = self._conn.cursor()
            try:
                yield cur
                if commit:
                    self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(operation, e) from e
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cur.close()

    # -- events ---------------------------------------------------------------

    def upsert_events(self, events: Iterable[Event]) -> int:
        """
        Insert or refresh a batch of events in one transaction.

        Returns how many previously unknown events were inserted. Live
        sentinels and rows without a usable timestamp are skipped.
        """
        now = to_epoch(utc_now())
        inserted = 0
        updated = 0
        skipped = 0
        with self._cursor("upsert_events", commit=True) as cur:
            for event in events:
                if event.is_live:
                    skipped += 1
                    continue
                try:
                    played_at = to_epoch(event.played_at)
                    scrobble_date = event.scrobble_date.isoformat()
                except (AttributeError, TypeError, ValueError, OverflowError) as e:
                    logger.warning(f"Skipping event {event.artist} - {event.title}: bad timestamp ({e})")
                    skipped += 1
                    continue

                try:
                    cur.execute(_INSERT_EVENT, (
                        event.artist, event.title, event.album, event.artwork_url, event.source_url,
                        played_at, scrobble_date, now, now,
                    ))
                    if cur.rowcount:
                        inserted += 1
                        continue
                    cur.execute(_UPDATE_EVENT, (
                        event.album, event.artwork_url, event.source_url, scrobble_date, now,
                        event.artist, event.title, played_at,
                    ))
                    updated += 1
                except sqlite3.IntegrityError as e:
                    logger.warning(f"Skipping event {event.artist} - {event.title}: {e}")
                    skipped += 1

        logger.debug(f"Upsert batch: {inserted} inserted, {updated} updated, {skipped} skipped")
        return inserted

    def query_range(self, start: datetime, end: datetime, limit: Optional[int] = 50, offset: int = 0) -> List[Event]:
        """Non-live events with start <= played_at < end, newest first."""
        query = """
            SELECT * FROM events
            WHERE played_at >= ? AND played_at < ? AND is_live = 0
            ORDER BY played_at DESC
            LIMIT ? OFFSET ?
        """
        params = (to_epoch(start), to_epoch(end), -1 if limit is None else limit, offset)
        with self._cursor("query_range") as cur:
            rows = cur.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def count_range(self, start: datetime, end: datetime) -> int:
        query = """
            SELECT COUNT(*) FROM events
            WHERE played_at >= ? AND played_at < ? AND is_live = 0
        """
        with self._cursor("count_range") as cur:
            row = cur.execute(query, (to_epoch(start), to_epoch(end))).fetchone()
        return row[0] or 0

    def query_for_aggregation(self, start: datetime, end: datetime) -> List[Event]:
        return self.query_range(start, end, limit=None)

    def get_coverage(self) -> Coverage:
        query = "SELECT MIN(played_at), MAX(played_at) FROM events WHERE is_live = 0"
        with self._cursor("get_coverage") as cur:
            row = cur.execute(query).fetchone()
        earliest, latest = row[0], row[1]
        return Coverage(
            earliest=from_epoch(earliest) if earliest is not None else None,
            latest=from_epoch(latest) if latest is not None else None,
        )

    def get_stats(self) -> Dict[str, Any]:
        query = """
            SELECT
                COUNT(*) AS total_events,
                COUNT(DISTINCT artist) AS unique_artists,
                COUNT(DISTINCT album) AS unique_albums,
                MIN(played_at) AS earliest,
                MAX(played_at) AS latest
            FROM events
            WHERE is_live = 0
        """
        with self._cursor("get_stats") as cur:
            row = cur.execute(query).fetchone()
        return {
            "total_events": row["total_events"] or 0,
            "unique_artists": row["unique_artists"] or 0,
            "unique_albums": row["unique_albums"] or 0,
            "coverage": Coverage(
                earliest=from_epoch(row["earliest"]) if row["earliest"] is not None else None,
                latest=from_epoch(row["latest"]) if row["latest"] is not None else None,
            ),
        }

    def cleanup_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete non-live events (and finished attempts) older than `days`."""
        cutoff = to_epoch((now or utc_now()) - timedelta(days=days))
        with self._cursor("cleanup_older_than", commit=True) as cur:
            cur.execute("DELETE FROM events WHERE played_at < ? AND is_live = 0", (cutoff,))
            deleted = cur.rowcount
            cur.execute("DELETE FROM sync_attempts WHERE started_at < ? AND status != ?",
                        (cutoff, SyncAttemptStatus.RUNNING.value))
            if cur.rowcount:
                logger.debug(f"Purged {cur.rowcount} old sync attempts")
        return deleted

    def compact(self):
        with self._cursor("compact") as cur:
            cur.execute("VACUUM")

    def reset(self):
        with self._cursor("reset", commit=True) as cur:
            cur.execute("DELETE FROM events")
            cur.execute("DELETE FROM sync_metadata")
            cur.execute("DELETE FROM sync_attempts")
        logger.warning("Event store reset")

    # -- watermark ------------------------------------------------------------

    def get_watermark(self) -> Optional[datetime]:
        with self._cursor("get_watermark") as cur:
            row = cur.execute("SELECT watermark FROM sync_metadata WHERE id = 1").fetchone()
        if row is None or row["watermark"] is None:
            return None
        return from_epoch(row["watermark"])

    def set_watermark(self, instant: datetime):
        value = to_epoch(instant)
        query = """
            INSERT INTO sync_metadata (id, watermark, updated_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                watermark = MAX(COALESCE(sync_metadata.watermark, 0), excluded.watermark),
                updated_at = excluded.updated_at
        """
        with self._lock:
            current = self.get_watermark()
            if current is not None and value < to_epoch(current):
                logger.warning(f"Ignoring watermark {instant.isoformat()}: older than current {current.isoformat()}")
                return
            with self._cursor("set_watermark", commit=True) as cur:
                cur.execute(query, (value, to_epoch(utc_now())))

    # -- sync attempts --------------------------------------------------------

    def record_sync_attempt(self, attempt: SyncAttempt) -> int:
        query = """
            INSERT INTO sync_attempts (
                kind, started_at, finished_at, events_added, remote_calls_made,
                failed_units, status, error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            attempt.kind.value,
            to_epoch(attempt.started_at),
            to_epoch(attempt.finished_at) if attempt.finished_at else None,
            attempt.events_added,
            attempt.remote_calls_made,
            attempt.failed_units,
            attempt.status.value,
            attempt.error_message,
            to_epoch(utc_now()),
        )
        with self._cursor("record_sync_attempt", commit=True) as cur:
            cur.execute(query, params)
            return cur.lastrowid

    def update_sync_attempt(self, attempt_id: int, **patch):
        unknown = set(patch) - set(_ATTEMPT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown sync attempt fields: {sorted(unknown)}")

        fields = []
        params = []
        for key, value in patch.items():
            if isinstance(value, datetime):
                value = to_epoch(value)
            elif isinstance(value, SyncAttemptStatus):
                value = value.value
            fields.append(f"{_ATTEMPT_COLUMNS[key]} = ?")
            params.append(value)
        if not fields:
            return

        params.append(attempt_id)
        with self._cursor("update_sync_attempt", commit=True) as cur:
            cur.execute(f"UPDATE sync_attempts SET {', '.join(fields)} WHERE id = ?", params)

    def list_sync_attempts(self, limit: int = 20) -> List[SyncAttempt]:
        with self._cursor("list_sync_attempts") as cur:
            rows = cur.execute("SELECT * FROM sync_attempts ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            SyncAttempt(
                id=row["id"],
                kind=SyncKind(row["kind"]),
                started_at=from_epoch(row["started_at"]),
                finished_at=from_epoch(row["finished_at"]) if row["finished_at"] is not None else None,
                events_added=row["events_added"],
                remote_calls_made=row["remote_calls_made"],
                failed_units=row["failed_units"],
                status=SyncAttemptStatus(row["status"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            artist=row["artist"],
            title=row["title"],
            album=row["album"],
            artwork_url=row["artwork_url"],
            source_url=row["source_url"],
            played_at=from_epoch(row["played_at"]),
            is_live=bool(row["is_live"]),
            scrobble_date=date.fromisoformat(row["scrobble_date"]),
        )
