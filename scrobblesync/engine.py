import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from .config import MAX_PAGE_SIZE, SyncConfig
from .errors import ConversionError, RemoteFetchError, StoreError, SyncError
from .models import (
    CacheStats, Coverage, Event, EventPage, FetchOutcome, RemoteEvent, RemoteEventsPage,
    SyncAttempt, SyncAttemptStatus, SyncKind, SyncReport,
)
from .store import EventStore
from .timeutil import add_days, day_windows, ensure_aware, get_zone, local_date, span_days, start_of_day, utc_now

logger = logging.getLogger(__name__)


class HistorySource(Protocol):
    async def list_events(self, start: datetime, end: datetime, page: int = 1, limit: int = 200) -> RemoteEventsPage:
        ...


class SyncEngine:
    """
    Keeps the local event store in step with the remote history and answers
    range queries from it.

    At most one sync session (backfill or incremental) runs per engine at a
    time; a request that arrives while one is running returns None without
    doing anything.
    """

    def __init__(
        self,
        store: EventStore,
        source: HistorySource,
        config: SyncConfig,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.store = store
        self.source = source
        self.config = config
        self.tz = get_zone(config.timezone)
        self._clock = clock or utc_now
        self._sleep = sleep or asyncio.sleep
        self._session_lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_syncing(self) -> bool:
        return self._session_lock.locked()

    async def initialize(self):
        if self._initialized:
            return
        self.store.initialize()
        self._initialized = True

        if self.store.get_watermark() is None:
            logger.info(f"First start: backfilling the last {self.config.backfill_days} days")
            await self.run_backfill()
        else:
            await self.sync_now()

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    # -- sync sessions --------------------------------------------------------

    async def run_backfill(self) -> Optional[SyncReport]:
        if self._session_lock.locked():
            logger.info("Sync already in progress, ignoring backfill request")
            return None
        async with self._session_lock:
            return await self._run_session(SyncKind.INITIAL, self._backfill)

    async def sync_now(self) -> Optional[SyncReport]:
        """Incremental sync from the watermark to now; backfills if there is no watermark yet."""
        if self._session_lock.locked():
            logger.info("Sync already in progress, ignoring sync request")
            return None
        async with self._session_lock:
            try:
                watermark = self.store.get_watermark()
            except StoreError as e:
                logger.error(f"Incremental sync aborted: {e}")
                return SyncReport(kind=SyncKind.INCREMENTAL, status=SyncAttemptStatus.FAILED, error_message=str(e))

            if watermark is None:
                logger.info("No watermark recorded, running initial backfill instead")
                return await self._run_session(SyncKind.INITIAL, self._backfill)

            async def incremental(report: SyncReport):
                await self._incremental(watermark, report)

            return await self._run_session(SyncKind.INCREMENTAL, incremental)

    async def _run_session(self, kind: SyncKind, work: Callable[[SyncReport], Awaitable[None]]) -> SyncReport:
        report = SyncReport(kind=kind, status=SyncAttemptStatus.RUNNING)
        try:
            report.attempt_id = self.store.record_sync_attempt(
                SyncAttempt(kind=kind, started_at=self._clock())
            )
            await work(report)
            if report.status == SyncAttemptStatus.RUNNING:
                report.status = SyncAttemptStatus.SUCCESS
        except StoreError as e:
            logger.error(f"{kind.value} sync aborted: {e}")
            report.status = SyncAttemptStatus.FAILED
            report.error_message = str(e)

        self._finalize_attempt(report)
        logger.info(
            f"{kind.value} sync {report.status.value}: {report.events_added} new events, "
            f"{report.remote_calls} remote calls, {report.failed_units} failed units"
        )
        return report

    def _finalize_attempt(self, report: SyncReport):
        if report.attempt_id is None:
            return
        try:
            self.store.update_sync_attempt(
                report.attempt_id,
                finished_at=self._clock(),
                events_added=report.events_added,
                remote_calls_made=report.remote_calls,
                failed_units=report.failed_units,
                status=report.status,
                error_message=report.error_message,
            )
        except StoreError as e:
            logger.error(f"Could not finalize sync attempt {report.attempt_id}: {e}")

    async def _backfill(self, report: SyncReport):
        now = self._clock()
        start = add_days(start_of_day(now, self.tz), -(self.config.backfill_days - 1), self.tz)
        logger.info(f"Backfill window: {start.isoformat()} - {now.isoformat()}")

        for index, (day_start, day_end) in enumerate(day_windows(start, now, self.tz)):
            if index:
                await self._sleep(self.config.request_delay_seconds)
            label = local_date(day_start, self.tz).isoformat()
            outcome = await self._fetch_unit(day_start, day_end, label)
            added = self._persist(outcome, report)
            if added:
                logger.info(f"{label}: {added} events added (total {report.events_added})")

        self.store.set_watermark(now)
        report.watermark = now

    async def _incremental(self, watermark: datetime, report: SyncReport):
        now = self._clock()
        outcome = await self._fetch_unit(watermark, now, "incremental")
        self._persist(outcome, report)
        if not outcome.complete:
            # Pages are newest first, so anything missed is older than what was stored
            report.status = SyncAttemptStatus.FAILED
            report.error_message = outcome.error or _incomplete_reason(outcome)
            logger.warning(f"Watermark kept at {watermark.isoformat()}: {report.error_message}")
            return

        self.store.set_watermark(now)
        report.watermark = now

    # -- fetching -------------------------------------------------------------

    async def _collect(self, start: datetime, end: datetime) -> Tuple[List[RemoteEvent], int, int, bool]:
        """
        Pages through [start, end) and returns (events, remote_calls, failed_pages, truncated).
        `truncated` is set when paging stopped at max_pages with pages left.
        Live sentinels are dropped. Raises RemoteFetchError if the first page fails.
        """
        if start >= end:
            return [], 0, 0, False

        events: List[RemoteEvent] = []
        calls = 0
        failed = 0
        truncated = False
        page = 1
        while page <= self.config.max_pages:
            if page > 1:
                await self._sleep(self.config.request_delay_seconds)
            calls += 1
            try:
                result = await self.source.list_events(start, end, page=page, limit=self.config.page_size)
            except RemoteFetchError as e:
                if page == 1:
                    raise
                failed += 1
                logger.error(f"Skipping page {page} of {start.isoformat()} - {end.isoformat()}: {e}")
                page += 1
                continue

            historical = [ev for ev in result.events if not ev.live]
            events.extend(historical)
            logger.debug(f"Page {page}/{result.total_pages or '?'}: {len(historical)} events")

            if len(historical) < self.config.page_size:
                break
            if result.total_pages and page >= result.total_pages:
                break
            page += 1
        else:
            truncated = True
            logger.warning(f"Stopped paging {start.isoformat()} - {end.isoformat()} after {self.config.max_pages} pages")

        return events, calls, failed, truncated

    async def _fetch_unit(self, start: datetime, end: datetime, label: str) -> FetchOutcome:
        try:
            events, calls, failed, truncated = await self._collect(start, end)
        except RemoteFetchError as e:
            logger.error(f"Fetch failed for {label}: {e}")
            return FetchOutcome(label=label, remote_calls=1, error=str(e))
        return FetchOutcome(label=label, events=events, remote_calls=calls, failed_pages=failed, truncated=truncated)

    def _persist(self, outcome: FetchOutcome, report: SyncReport) -> int:
        report.remote_calls += outcome.remote_calls
        if not outcome.complete:
            report.failed_units += 1
        if not outcome.events:
            return 0
        added = self.store.upsert_events(self.convert_all(outcome.events))
        report.events_added += added
        return added

    # -- conversion -----------------------------------------------------------

    def to_event(self, remote: RemoteEvent) -> Event:
        if not remote.artist.strip() or not remote.title.strip():
            raise ConversionError(f"missing artist or title: {remote!r}")
        if remote.played_at is None and not remote.live:
            raise ConversionError(f"missing timestamp for {remote.artist} - {remote.title}")

        played_at = remote.played_at or self._clock()
        return Event(
            artist=remote.artist,
            title=remote.title,
            album=remote.album,
            artwork_url=remote.artwork_url,
            source_url=remote.url,
            played_at=played_at,
            is_live=remote.live,
            scrobble_date=local_date(played_at, self.tz),
        )

    def convert_all(self, remote_events: List[RemoteEvent]) -> List[Event]:
        events = []
        for remote in remote_events:
            if remote.live:
                continue
            try:
                events.append(self.to_event(remote))
            except ConversionError as e:
                logger.warning(f"Skipping remote event: {e}")
        return events

    # -- gap reconciliation ---------------------------------------------------

    @staticmethod
    def missing_ranges(start: datetime, end: datetime, coverage: Coverage) -> List[Tuple[datetime, datetime]]:
        """
        Parts of [start, end) outside the covered range: one before the
        earliest event and one after the latest. Holes inside the covered
        range are not detected.
        """
        if start >= end:
            return []
        if coverage.is_empty:
            return [(start, end)]

        ranges = []
        if start < coverage.earliest:
            ranges.append((start, min(coverage.earliest, end)))
        after_latest = coverage.latest + timedelta(seconds=1)
        if end > after_latest:
            ranges.append((max(after_latest, start), end))
        return ranges

    async def reconcile_gaps(self, start: datetime, end: datetime) -> int:
        start, end = ensure_aware(start), ensure_aware(end)
        coverage = self.store.get_coverage()
        added = 0
        for gap_start, gap_end in self.missing_ranges(start, end, coverage):
            days = span_days(gap_start, gap_end)
            if days > self.config.gap_max_days:
                logger.warning(
                    f"Skipping gap {gap_start.isoformat()} - {gap_end.isoformat()}: "
                    f"{days} days exceeds the {self.config.gap_max_days} day limit"
                )
                continue
            added += await self._fill_gap(gap_start, gap_end)
        return added

    async def _fill_gap(self, start: datetime, end: datetime) -> int:
        label = f"gap {start.isoformat()} - {end.isoformat()}"
        logger.info(f"Fetching missing range: {label}")
        report = SyncReport(kind=SyncKind.GAP_FILL, status=SyncAttemptStatus.RUNNING)
        report.attempt_id = self.store.record_sync_attempt(
            SyncAttempt(kind=SyncKind.GAP_FILL, started_at=self._clock())
        )
        outcome = await self._fetch_unit(start, end, label)
        try:
            added = self._persist(outcome, report)
        except StoreError as e:
            report.status = SyncAttemptStatus.FAILED
            report.error_message = str(e)
            self._finalize_attempt(report)
            raise

        if outcome.complete:
            report.status = SyncAttemptStatus.SUCCESS
        else:
            report.status = SyncAttemptStatus.FAILED
            report.error_message = outcome.error or _incomplete_reason(outcome)
        self._finalize_attempt(report)
        if added:
            logger.info(f"Filled {label}: {added} events")
        return added

    # -- read path ------------------------------------------------------------

    async def get_events(self, start: datetime, end: datetime, limit: int = 50, page: int = 1) -> EventPage:
        start, end = ensure_aware(start), ensure_aware(end)
        page = max(page, 1)
        # Remote pages are capped, so the cache path pages by the same size
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        try:
            await self._ensure_initialized()
            await self.reconcile_gaps(start, end)
            events = self.store.query_range(start, end, limit, (page - 1) * limit)
            total = self.store.count_range(start, end)
            logger.debug(f"Served {len(events)} of {total} events from cache")
            return EventPage(events=events, total=total, source="cache")
        except SyncError as e:
            logger.error(f"Cache read failed, falling back to remote history: {e}")

        result = await self.source.list_events(start, end, page=page, limit=limit)
        events = self.convert_all(result.events)
        return EventPage(events=events, total=result.total_count or len(events), source="remote")

    async def get_events_for_stats(self, start: datetime, end: datetime) -> List[Event]:
        start, end = ensure_aware(start), ensure_aware(end)
        try:
            await self._ensure_initialized()
            await self.reconcile_gaps(start, end)
            events = self.store.query_for_aggregation(start, end)
            logger.debug(f"Served {len(events)} events for stats from cache")
            return events
        except SyncError as e:
            logger.error(f"Cache read for stats failed, falling back to remote history: {e}")

        remote_events, _, _, _ = await self._collect(start, end)
        return self.convert_all(remote_events)

    # -- maintenance ----------------------------------------------------------

    async def get_cache_stats(self) -> CacheStats:
        await self._ensure_initialized()
        stats = self.store.get_stats()
        return CacheStats(**stats, last_sync=self.store.get_watermark())

    async def cleanup(self, days_to_keep: Optional[int] = None) -> int:
        await self._ensure_initialized()
        days = days_to_keep if days_to_keep is not None else self.config.retention_days
        logger.info(f"Removing events older than {days} days")
        deleted = self.store.cleanup_older_than(days, now=self._clock())
        logger.info(f"Removed {deleted} old events")
        return deleted

    async def compact(self):
        await self._ensure_initialized()
        logger.info("Compacting event store")
        self.store.compact()

    def close(self):
        self.store.close()
        self._initialized = False


def _incomplete_reason(outcome: FetchOutcome) -> str:
    if outcome.truncated:
        return f"{outcome.label}: stopped at the page limit with older events left"
    return f"{outcome.label}: {outcome.failed_pages} page(s) failed"
