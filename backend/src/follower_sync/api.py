"""FastAPI application for Follower Sync."""
import logging
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .cache import LocalCacheStore, SqlKeyValueStore
from .config import settings
from .database import init_db, SessionLocal
from .ledger import UndoToken, RemovedFollowingEntry, DeletedNotification
from .session import ReconciliationSession
from .sources import SourceFetchFailure, build_source
from .trends import PERIOD_BUCKETS


logger = logging.getLogger(__name__)


app = FastAPI(
    title="Follower Sync API",
    description="Offline-first follower reconciliation",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Startup
# =============================================================================

def create_session() -> ReconciliationSession:
    """Session over the configured source and the SQL-backed cache."""
    cache = LocalCacheStore(SqlKeyValueStore(SessionLocal), settings.cache_namespace)
    session = ReconciliationSession(build_source(settings), cache)
    session.load_cached()
    return session


@app.on_event("startup")
async def startup():
    """Initialize the cache tables and restore the last synced state."""
    init_db()
    app.state.session = create_session()


@app.on_event("shutdown")
async def shutdown():
    """Close the relationship source's HTTP client, if it has one."""
    session = getattr(app.state, "session", None)
    close = getattr(session.source, "close", None) if session else None
    if close is not None:
        await close()
        logger.info("Relationship source closed")


def get_session(request: Request) -> ReconciliationSession:
    session = getattr(request.app.state, "session", None)
    if session is None:
        session = request.app.state.session = create_session()
    return session


# =============================================================================
# Schemas
# =============================================================================

class SyncResponse(BaseModel):
    """Result of a sync request."""
    status: str
    synced_at: Optional[datetime] = None
    total_followers: int = 0
    total_following: int = 0
    mutual_count: int = 0
    not_following_back_count: int = 0
    not_followed_back_count: int = 0
    new_notifications: int = 0
    cache_written: bool = False


class UndoResponse(BaseModel):
    """Handle for reversing a mutation."""
    serial: int
    kind: str


class NotificationOut(BaseModel):
    id: int
    type: str
    title: str
    message: str
    timestamp: datetime
    is_read: bool
    user_id: Optional[str] = None
    avatar_url: Optional[str] = None


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/")
async def root():
    """Health check."""
    return {
        "service": "follower-sync",
        "status": "healthy",
        "version": __version__
    }


@app.post("/sync", response_model=SyncResponse)
async def run_sync(session: ReconciliationSession = Depends(get_session)):
    """Fetch relationships, rebuild the feed, and write through to the cache."""
    try:
        result = await session.sync()
    except SourceFetchFailure as e:
        logger.warning(f"Sync request failed: {e}")
        raise HTTPException(status_code=502, detail=f"Sync failed: {e.message}")
    return SyncResponse(**result)


@app.get("/relationships")
async def get_relationships(session: ReconciliationSession = Depends(get_session)):
    """The four derived relationship lists plus counts."""
    snapshot = session.snapshot
    return {
        "has_data": session.has_data,
        "last_updated": session.last_updated,
        "summary": snapshot.summary(),
        "followers": [u.to_dict() for u in snapshot.followers],
        "following": [u.to_dict() for u in snapshot.following],
        "mutuals": [u.to_dict() for u in snapshot.mutuals],
        "not_following_back": [u.to_dict() for u in session.not_following_back()],
        "not_followed_back": [u.to_dict() for u in snapshot.not_followed_back],
    }


@app.get("/trends")
async def get_trends(
    period: Optional[str] = None,
    bucket_count: Optional[int] = None,
    session: ReconciliationSession = Depends(get_session)
):
    """Follower growth (cumulative) and unfollows (daily).

    ``period`` (week/month/year) picks the bucket count; ``bucket_count``
    overrides it.
    """
    if period is not None:
        if period not in PERIOD_BUCKETS:
            raise HTTPException(status_code=400, detail=f"Unknown period: {period}")
        bucket_count = bucket_count or PERIOD_BUCKETS[period]
    return {
        "followers": session.follower_trend(bucket_count),
        "unfollows": session.unfollow_trend(bucket_count),
        "dashboard_metrics": session.dashboard_metrics,
    }


@app.get("/notifications", response_model=list[NotificationOut])
async def list_notifications(
    unread: bool = False,
    type: Optional[str] = None,
    session: ReconciliationSession = Depends(get_session)
):
    """Notification feed, newest first."""
    notifications = session.notifications
    if unread:
        notifications = [n for n in notifications if not n.is_read]
    if type:
        notifications = [n for n in notifications if n.type.value == type]
    return [NotificationOut(**n.to_dict()) for n in notifications]


@app.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    session: ReconciliationSession = Depends(get_session)
):
    found = session.mark_read(notification_id)
    return {"id": notification_id, "found": found, "unread_count": session.unread_count}


@app.delete("/notifications/{notification_id}", response_model=Optional[UndoResponse])
async def delete_notification(
    notification_id: int,
    session: ReconciliationSession = Depends(get_session)
):
    """Delete a notification; returns an undo handle (null if unknown)."""
    token = session.delete_notification(notification_id)
    return UndoResponse(serial=token.serial, kind=token.kind) if token else None


@app.post("/following/{user_id}/unfollow", response_model=Optional[UndoResponse])
async def unfollow(
    user_id: str,
    session: ReconciliationSession = Depends(get_session)
):
    """Remove an account from the following list; returns an undo handle."""
    token = session.remove_following(user_id)
    return UndoResponse(serial=token.serial, kind=token.kind) if token else None


@app.post("/undo/{serial}")
async def undo(
    serial: int,
    kind: str,
    session: ReconciliationSession = Depends(get_session)
):
    """Reverse a mutation by its undo handle."""
    if kind not in (RemovedFollowingEntry.kind, DeletedNotification.kind):
        raise HTTPException(status_code=400, detail=f"Unknown undo kind: {kind}")
    restored = session.undo(UndoToken(serial=serial, kind=kind))
    return {"serial": serial, "restored": restored}


@app.get("/cache/stats")
async def cache_stats(session: ReconciliationSession = Depends(get_session)):
    return session.cache_stats()
