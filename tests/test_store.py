import os
import sqlite3
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone

from scrobblesync.errors import StoreError
from scrobblesync.models import Event, SyncAttempt, SyncAttemptStatus, SyncKind
from scrobblesync.store import EventStore


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_event(artist="Nina Simone", title="Sinnerman", played_at=None, **kwargs):
    played_at = played_at or utc(2024, 3, 1, 18, 30)
    return Event(
        artist=artist,
        title=title,
        played_at=played_at,
        scrobble_date=kwargs.pop("scrobble_date", played_at.date() if played_at else date(2024, 3, 1)),
        **kwargs
    )


class FailingCursor:
    """Cursor wrapper that raises a disk error for any statement touching `title`."""

    def __init__(self, cursor, title):
        self._cursor = cursor
        self._title = title

    def execute(self, sql, params=()):
        if self._title in params:
            raise sqlite3.OperationalError("disk I/O error")
        return self._cursor.execute(sql, params)

    def __getattr__(self, name):
        return getattr(self._cursor, name)


class FailingConnection:
    def __init__(self, conn, title):
        self._conn = conn
        self._title = title

    def cursor(self):
        return FailingCursor(self._conn.cursor(), self._title)

    def __getattr__(self, name):
        return getattr(self._conn, name)


class TestEventStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = EventStore(os.path.join(self.tmp.name, "nested", "cache.db"))
        self.store.initialize()

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_upsert_is_idempotent(self):
        event = make_event(album="Pastel Blues")
        self.assertEqual(self.store.upsert_events([event]), 1)
        self.assertEqual(self.store.upsert_events([event]), 0)
        self.assertEqual(self.store.get_stats()["total_events"], 1)

    def test_upsert_refreshes_metadata(self):
        self.store.upsert_events([make_event(album=None)])
        self.store.upsert_events([make_event(album="Pastel Blues", artwork_url="https://img/x.png")])

        events = self.store.query_range(utc(2024, 3, 1), utc(2024, 3, 2), limit=None)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].album, "Pastel Blues")
        self.assertEqual(events[0].artwork_url, "https://img/x.png")

    def test_live_and_malformed_rows_are_skipped(self):
        batch = [
            make_event(title="Feeling Good"),
            make_event(title="Now Playing", is_live=True),
            Event(artist="Nina Simone", title="No Timestamp", played_at=None, scrobble_date=date(2024, 3, 1)),
            make_event(title="I Put a Spell on You", played_at=utc(2024, 3, 1, 19, 0)),
        ]
        self.assertEqual(self.store.upsert_events(batch), 2)
        titles = [e.title for e in self.store.query_range(utc(2024, 3, 1), utc(2024, 3, 2), limit=None)]
        self.assertEqual(titles, ["I Put a Spell on You", "Feeling Good"])

    def test_failed_batch_is_rolled_back(self):
        batch = [
            make_event(title="Feeling Good", played_at=utc(2024, 3, 1, 18, 0)),
            make_event(title="Sinnerman", played_at=utc(2024, 3, 1, 18, 10)),
            make_event(title="Lilac Wine", played_at=utc(2024, 3, 1, 18, 20)),
            make_event(title="Wild Is the Wind", played_at=utc(2024, 3, 1, 18, 30)),
        ]
        real_conn = self.store._conn
        self.store._conn = FailingConnection(real_conn, "Lilac Wine")
        try:
            with self.assertRaises(StoreError) as ctx:
                self.store.upsert_events(batch)
        finally:
            self.store._conn = real_conn

        self.assertEqual(ctx.exception.operation, "upsert_events")
        self.assertIsInstance(ctx.exception.cause, sqlite3.OperationalError)
        self.assertEqual(self.store.count_range(utc(2024, 3, 1), utc(2024, 3, 2)), 0)

        self.assertEqual(self.store.upsert_events(batch), 4)

    def test_range_is_half_open_and_newest_first(self):
        base = utc(2024, 3, 1)
        self.store.upsert_events([
            make_event(title=f"Track {hour}", played_at=base + timedelta(hours=hour)) for hour in range(6)
        ])

        events = self.store.query_range(base + timedelta(hours=1), base + timedelta(hours=4), limit=None)
        self.assertEqual([e.title for e in events], ["Track 3", "Track 2", "Track 1"])
        self.assertEqual(self.store.count_range(base + timedelta(hours=1), base + timedelta(hours=4)), 3)

    def test_count_matches_unbounded_query(self):
        base = utc(2024, 3, 1)
        self.store.upsert_events([
            make_event(title=f"Track {i}", played_at=base + timedelta(minutes=7 * i)) for i in range(40)
        ])
        windows = [
            (base, base),
            (base, base + timedelta(hours=1)),
            (base + timedelta(minutes=30), base + timedelta(hours=3)),
            (base - timedelta(days=1), base + timedelta(days=1)),
        ]
        for start, end in windows:
            self.assertEqual(
                self.store.count_range(start, end),
                len(self.store.query_range(start, end, limit=None, offset=0))
            )

    def test_pagination(self):
        base = utc(2024, 3, 1)
        self.store.upsert_events([
            make_event(title=f"Track {i}", played_at=base + timedelta(minutes=i)) for i in range(5)
        ])
        page_two = self.store.query_range(base, base + timedelta(hours=1), limit=2, offset=2)
        self.assertEqual([e.title for e in page_two], ["Track 2", "Track 1"])
        self.assertEqual(len(self.store.query_for_aggregation(base, base + timedelta(hours=1))), 5)

    def test_coverage(self):
        coverage = self.store.get_coverage()
        self.assertIsNone(coverage.earliest)
        self.assertIsNone(coverage.latest)
        self.assertTrue(coverage.is_empty)

        self.store.upsert_events([
            make_event(title="A", played_at=utc(2024, 1, 10)),
            make_event(title="B", played_at=utc(2024, 1, 20)),
        ])
        coverage = self.store.get_coverage()
        self.assertEqual(coverage.earliest, utc(2024, 1, 10))
        self.assertEqual(coverage.latest, utc(2024, 1, 20))

    def test_stored_fields(self):
        self.store.upsert_events([make_event(
            album="Pastel Blues",
            source_url="https://www.last.fm/music/Nina+Simone/_/Sinnerman",
            scrobble_date=date(2024, 3, 2),
        )])
        event = self.store.query_range(utc(2024, 3, 1), utc(2024, 3, 2), limit=1)[0]
        self.assertIsNotNone(event.id)
        self.assertEqual(event.played_at, utc(2024, 3, 1, 18, 30))
        self.assertEqual(event.scrobble_date, date(2024, 3, 2))
        self.assertEqual(event.source_url, "https://www.last.fm/music/Nina+Simone/_/Sinnerman")
        self.assertFalse(event.is_live)

    def test_watermark_never_moves_back(self):
        self.assertIsNone(self.store.get_watermark())
        self.store.set_watermark(utc(2024, 3, 2))
        self.store.set_watermark(utc(2024, 3, 1))
        self.assertEqual(self.store.get_watermark(), utc(2024, 3, 2))
        self.store.set_watermark(utc(2024, 3, 3))
        self.assertEqual(self.store.get_watermark(), utc(2024, 3, 3))

    def test_sync_attempt_log(self):
        attempt_id = self.store.record_sync_attempt(
            SyncAttempt(kind=SyncKind.INCREMENTAL, started_at=utc(2024, 3, 1, 12))
        )
        self.store.update_sync_attempt(
            attempt_id,
            finished_at=utc(2024, 3, 1, 12, 1),
            events_added=12,
            remote_calls_made=2,
            status=SyncAttemptStatus.SUCCESS,
        )

        attempt = self.store.list_sync_attempts()[0]
        self.assertEqual(attempt.id, attempt_id)
        self.assertEqual(attempt.kind, SyncKind.INCREMENTAL)
        self.assertEqual(attempt.status, SyncAttemptStatus.SUCCESS)
        self.assertEqual(attempt.finished_at, utc(2024, 3, 1, 12, 1))
        self.assertEqual(attempt.events_added, 12)
        self.assertIsNone(attempt.error_message)

        with self.assertRaises(ValueError):
            self.store.update_sync_attempt(attempt_id, kind="initial")

    def test_cleanup_deletes_only_old_events(self):
        now = utc(2024, 6, 1)
        self.store.upsert_events([
            make_event(title="Old", played_at=now - timedelta(days=120)),
            make_event(title="Borderline", played_at=now - timedelta(days=89)),
            make_event(title="New", played_at=now - timedelta(days=1)),
        ])
        old_attempt = self.store.record_sync_attempt(SyncAttempt(
            kind=SyncKind.INITIAL, started_at=now - timedelta(days=100), status=SyncAttemptStatus.SUCCESS
        ))

        deleted = self.store.cleanup_older_than(90, now=now)

        self.assertEqual(deleted, 1)
        remaining = [e.title for e in self.store.query_range(now - timedelta(days=365), now, limit=None)]
        self.assertEqual(remaining, ["New", "Borderline"])
        self.assertNotIn(old_attempt, [a.id for a in self.store.list_sync_attempts()])

        self.store.compact()
        self.assertEqual(self.store.get_stats()["total_events"], 2)

    def test_reset(self):
        self.store.upsert_events([make_event()])
        self.store.set_watermark(utc(2024, 3, 2))
        self.store.reset()
        self.assertEqual(self.store.get_stats()["total_events"], 0)
        self.assertIsNone(self.store.get_watermark())
        self.assertEqual(self.store.list_sync_attempts(), [])

    def test_closed_store_raises_store_error(self):
        self.store.close()
        with self.assertRaises(StoreError) as ctx:
            self.store.count_range(utc(2024, 3, 1), utc(2024, 3, 2))
        self.assertEqual(ctx.exception.operation, "count_range")

    def test_initialize_is_idempotent(self):
        self.store.upsert_events([make_event()])
        self.store.initialize()
        reopened = EventStore(self.store.db_path)
        reopened.initialize()
        try:
            self.assertEqual(reopened.get_stats()["total_events"], 1)
        finally:
            reopened.close()


if __name__ == '__main__':
    unittest.main()
