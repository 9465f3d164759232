from datetime import date, datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class SyncKind(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    GAP_FILL = "gap-fill"


class SyncAttemptStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RemoteEvent(BaseModel):
    """One track as the remote history source reports it."""
    artist: str
    title: str
    album: Optional[str] = None
    artwork_url: Optional[str] = None
    url: Optional[str] = None
    played_at: Optional[datetime] = None  # None for the now-playing sentinel
    live: bool = False


class RemoteEventsPage(BaseModel):
    events: List[RemoteEvent] = Field(default_factory=list)
    total_count: int = 0
    total_pages: int = 0
    page: int = 1
    per_page: int = 0


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    artist: str
    title: str
    album: Optional[str] = None
    artwork_url: Optional[str] = None
    source_url: Optional[str] = None
    played_at: Optional[datetime] = None
    is_live: bool = False
    scrobble_date: date


class EventPage(BaseModel):
    events: List[Event] = Field(default_factory=list)
    total: int = 0
    source: str = "cache"  # cache or remote


class Coverage(BaseModel):
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.earliest is None or self.latest is None


class SyncAttempt(BaseModel):
    id: Optional[int] = None
    kind: SyncKind
    started_at: datetime
    finished_at: Optional[datetime] = None
    events_added: int = 0
    remote_calls_made: int = 0
    failed_units: int = 0
    status: SyncAttemptStatus = SyncAttemptStatus.RUNNING
    error_message: Optional[str] = None


class CacheStats(BaseModel):
    total_events: int = 0
    unique_artists: int = 0
    unique_albums: int = 0
    coverage: Coverage = Field(default_factory=Coverage)
    last_sync: Optional[datetime] = None


class FetchOutcome(BaseModel):
    """Result of fetching one unit of work (a day, a gap, an incremental window)."""
    label: str
    events: List[RemoteEvent] = Field(default_factory=list)
    remote_calls: int = 0
    failed_pages: int = 0
    truncated: bool = False  # stopped at max_pages with more history left
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def complete(self) -> bool:
        """Every page of the unit was fetched."""
        return self.ok and not self.failed_pages and not self.truncated


class SyncReport(BaseModel):
    attempt_id: Optional[int] = None
    kind: SyncKind
    status: SyncAttemptStatus
    events_added: int = 0
    remote_calls: int = 0
    failed_units: int = 0
    watermark: Optional[datetime] = None
    error_message: Optional[str] = None
