import logging
import httpx
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import MAX_PAGE_SIZE, Settings
from ..errors import ConversionError, RemoteFetchError
from ..models import RemoteEvent, RemoteEventsPage
from ..timeutil import from_epoch, to_epoch

logger = logging.getLogger(__name__)

IMAGE_SIZE_PREFERENCE = ("extralarge", "large", "medium")


class LastfmClient:
    """Read-only access to a user's scrobble history via user.getRecentTracks."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.LASTFM_API_KEY
        self.username = settings.LASTFM_USERNAME
        self.client = client or httpx.AsyncClient(
            base_url=settings.LASTFM_BASE_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS
        )

    async def initialize(self):
        if not self.api_key or not self.username:
            raise ValueError("LASTFM_API_KEY and LASTFM_USERNAME must be set")
        logger.info(f"Last.fm client ready for user {self.username}")

    async def close(self):
        await self.client.aclose()

    async def _make_request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        request_params = {
            "method": method,
            "user": self.username,
            "api_key": self.api_key,
            "format": "json",
            **params,
        }
        try:
            resp = await self.client.get("", params=request_params)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RemoteFetchError(
                f"Last.fm {method} returned HTTP {e.response.status_code}",
                status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise RemoteFetchError(f"Last.fm {method} request failed: {e}") from e
        except ValueError as e:
            raise RemoteFetchError(f"Last.fm {method} returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise RemoteFetchError(f"Last.fm {method} returned unexpected payload")
        if "error" in data:
            raise RemoteFetchError(f"Last.fm error {data.get('error')}: {data.get('message', 'unknown')}")
        return data

    async def list_events(self, start: datetime, end: datetime, page: int = 1, limit: int = MAX_PAGE_SIZE) -> RemoteEventsPage:
        """
        One page of scrobbles played in [start, end).
        The now-playing track, if any, comes back flagged live=True.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        ts_from = to_epoch(start)
        # Last.fm treats `to` as inclusive
        ts_to = max(ts_from, to_epoch(end) - 1)

        data = await self._make_request("user.getrecenttracks", {
            "from": ts_from,
            "to": ts_to,
            "limit": limit,
            "page": page,
        })

        recent = data.get("recenttracks") or {}
        attr = recent.get("@attr") or {}
        raw_tracks = recent.get("track") or []
        # A single result comes back as an object instead of a list
        if isinstance(raw_tracks, dict):
            raw_tracks = [raw_tracks]

        events: List[RemoteEvent] = []
        for raw in raw_tracks:
            try:
                events.append(self.parse_track(raw))
            except ConversionError as e:
                logger.warning(f"Skipping malformed Last.fm track: {e}")

        return RemoteEventsPage(
            events=events,
            total_count=_as_int(attr.get("total")),
            total_pages=_as_int(attr.get("totalPages")),
            page=_as_int(attr.get("page"), page),
            per_page=_as_int(attr.get("perPage"), limit),
        )

    @staticmethod
    def parse_track(raw: Dict[str, Any]) -> RemoteEvent:
        if not isinstance(raw, dict):
            raise ConversionError(f"expected object, got {type(raw).__name__}")

        artist = raw.get("artist")
        if isinstance(artist, dict):
            artist = artist.get("#text") or artist.get("name")
        title = raw.get("name")
        if not artist or not title:
            raise ConversionError(f"missing artist or title in {raw!r:.120}")

        album = raw.get("album")
        if isinstance(album, dict):
            album = album.get("#text")

        live = (raw.get("@attr") or {}).get("nowplaying") == "true"
        played_at = None
        if not live:
            uts = (raw.get("date") or {}).get("uts")
            try:
                played_at = from_epoch(int(uts))
            except (TypeError, ValueError, OverflowError, OSError) as e:
                raise ConversionError(f"bad timestamp {uts!r} for {artist} - {title}") from e

        return RemoteEvent(
            artist=artist,
            title=title,
            album=album or None,
            artwork_url=_pick_image(raw.get("image")),
            url=raw.get("url") or None,
            played_at=played_at,
            live=live,
        )


def _pick_image(images: Any) -> Optional[str]:
    if not isinstance(images, list):
        return None
    by_size = {img.get("size"): img.get("#text") for img in images if isinstance(img, dict)}
    for size in IMAGE_SIZE_PREFERENCE:
        if by_size.get(size):
            return by_size[size]
    return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
