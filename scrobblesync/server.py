import time
from datetime import datetime
from fastapi import FastAPI, Depends, HTTPException, Header, Query
from fastapi.responses import PlainTextResponse
from typing import Optional

from .config import MAX_PAGE_SIZE, settings
from .engine import SyncEngine

app = FastAPI(title="Scrobble Sync")
engine: Optional[SyncEngine] = None


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_engine() -> SyncEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return engine


@app.get("/healthz")
async def healthz():
    if not engine:
        return {"status": "starting"}

    last_sync = engine.store.get_watermark() if engine.store.is_open else None
    if last_sync is None:
        return {"status": "syncing" if engine.is_syncing else "starting"}

    # Lenient: allow a few missed intervals before reporting lag
    age = time.time() - last_sync.timestamp()
    if age > (settings.SYNC_INTERVAL_SECONDS * 3 + 60):
        return {"status": "lagging", "last_sync_age": age}

    return {"status": "ok"}


@app.get("/status", dependencies=[Depends(get_token)])
async def status(sync_engine: SyncEngine = Depends(get_engine)):
    stats = await sync_engine.get_cache_stats()
    return {
        "syncing": sync_engine.is_syncing,
        "cache": stats.model_dump(mode="json"),
        "recent_attempts": [a.model_dump(mode="json") for a in sync_engine.store.list_sync_attempts(limit=10)],
        "config": {
            "interval": settings.SYNC_INTERVAL_SECONDS,
            "backfill_days": sync_engine.config.backfill_days,
            "gap_max_days": sync_engine.config.gap_max_days,
        }
    }


@app.get("/events", dependencies=[Depends(get_token)])
async def events(
    start: datetime,
    end: datetime,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    page: int = Query(1, ge=1),
    sync_engine: SyncEngine = Depends(get_engine),
):
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    result = await sync_engine.get_events(start, end, limit=limit, page=page)
    return result.model_dump(mode="json")


@app.post("/sync", dependencies=[Depends(get_token)])
async def sync(sync_engine: SyncEngine = Depends(get_engine)):
    report = await sync_engine.sync_now()
    if report is None:
        return {"status": "already_running"}
    return report.model_dump(mode="json")


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    # Simple prometheus-style text format
    if not engine or not engine.store.is_open:
        return ""

    stats = engine.store.get_stats()
    watermark = engine.store.get_watermark()
    lines = [
        f'scrobblesync_events_total {stats["total_events"]}',
        f'scrobblesync_unique_artists {stats["unique_artists"]}',
        f'scrobblesync_last_sync_timestamp {watermark.timestamp() if watermark else 0}',
        f'scrobblesync_sync_running {1 if engine.is_syncing else 0}',
    ]
    return "\n".join(lines)
