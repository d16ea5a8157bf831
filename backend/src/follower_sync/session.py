"""Reconciliation session - sync pipeline, cold start, and mutations.

One session is owned by one host (a screen, an API app, a CLI run). It holds
the current snapshot, the notification feed and the undo ledger, and is the
only writer to its cache namespace.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .cache import (
    LocalCacheStore, DASHBOARD_METRICS, NOTIFICATIONS, USER_PROFILE,
    FOLLOWERS, FOLLOWING, HAS_SYNCED, LAST_UPDATED
)
from .config import settings as default_settings
from .dashboard import build_dashboard_metrics, build_profile_summary
from .ledger import MutationLedger, UndoToken, RemovedFollowingEntry
from .notifications import NotificationFeedGenerator, merge_feeds
from .records import (
    InvariantViolation, NotificationRecord, RelationshipSnapshot, UserRecord, utc_now
)
from .relationships import reconcile, sort_newest_first
from .sources import RelationshipSource, SourceFetchFailure
from .trends import follower_trend, unfollow_trend


logger = logging.getLogger(__name__)


def _users_from_payload(payload: dict, field: str) -> list[UserRecord]:
    """Pull one user list out of a source payload, converting dicts."""
    raw = payload.get(field)
    if raw is None:
        raise SourceFetchFailure(0, f"source payload missing '{field}'")
    if not isinstance(raw, (list, tuple)):
        raise SourceFetchFailure(0, f"source payload '{field}' is {type(raw).__name__}, not a list")

    users = []
    for item in raw:
        if isinstance(item, UserRecord):
            users.append(item)
            continue
        try:
            users.append(UserRecord.from_dict(item))
        except (InvariantViolation, ValueError, TypeError) as e:
            raise SourceFetchFailure(0, f"malformed '{field}' record: {e}") from e
    return users


class ReconciliationSession:
    """
    Offline-first view over one account's relationships.

    - ``load_cached()`` renders from the cache without touching the network
    - ``sync()`` fetches, reconciles, writes through, then swaps state
    - mutations go through the undo ledger and are written back best-effort
    """

    def __init__(
        self,
        source: RelationshipSource,
        cache: LocalCacheStore,
        *,
        generator: NotificationFeedGenerator = None,
        clock: Callable[[], datetime] = utc_now,
        config=None
    ):
        self.source = source
        self.cache = cache
        self.config = config or default_settings
        self.clock = clock
        self.generator = generator or NotificationFeedGenerator(
            unfollow_offset=timedelta(hours=self.config.unfollow_offset_hours)
        )
        self.ledger = MutationLedger()

        self.dashboard_metrics: list[dict] = []
        self.last_updated: Optional[datetime] = None
        self.has_data = False

        self._followers: tuple[UserRecord, ...] = ()
        self._snapshot = RelationshipSnapshot.empty(clock())
        self._snapshot_version = self.ledger.version
        # Last snapshot as fetched (before local mutations); diff base for the feed
        self._last_synced: Optional[RelationshipSnapshot] = None
        self._sync_lock = threading.Lock()

    # =========================================================================
    # Read views
    # =========================================================================

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def snapshot(self) -> RelationshipSnapshot:
        """Current relationships, including local unfollows and undos."""
        if self.ledger.version != self._snapshot_version:
            self._snapshot = reconcile(
                self._followers, self.ledger.following,
                captured_at=self._snapshot.captured_at,
            )
            self._snapshot_version = self.ledger.version
        return self._snapshot

    @property
    def notifications(self) -> tuple[NotificationRecord, ...]:
        return self.ledger.notifications

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.ledger.notifications if not n.is_read)

    def follower_trend(self, bucket_count: int = None) -> list[float]:
        return follower_trend(
            self.snapshot, self.clock(), bucket_count or self.config.trend_bucket_count
        )

    def unfollow_trend(self, bucket_count: int = None) -> list[float]:
        return unfollow_trend(
            self.snapshot, self.clock(), bucket_count or self.config.trend_bucket_count
        )

    def not_following_back(self, newest_first: bool = True) -> list[UserRecord]:
        users = list(self.snapshot.not_following_back)
        return sort_newest_first(users) if newest_first else users

    def cache_stats(self) -> dict:
        """Cache presence per key, plus whether the cached lists are stale."""
        stats = self.cache.stats()
        now = self.clock()
        stats["stale"] = {
            FOLLOWERS: self.cache.is_expired(
                FOLLOWERS, self.config.followers_cache_expiry_hours, now
            ),
            NOTIFICATIONS: self.cache.is_expired(
                NOTIFICATIONS, self.config.notifications_cache_expiry_hours, now
            ),
        }
        return stats

    # =========================================================================
    # Cold start
    # =========================================================================

    def _cached_users(self, key: str) -> Optional[list[UserRecord]]:
        entry = self.cache.get(key)
        if not entry:
            return None
        try:
            return [UserRecord.from_dict(item) for item in entry.payload]
        except (InvariantViolation, ValueError, TypeError) as e:
            logger.warning(f"Cached {key} unreadable, ignoring: {e}")
            return None

    def _cached_notifications(self) -> list[NotificationRecord]:
        entry = self.cache.get(NOTIFICATIONS)
        if not entry:
            return []
        try:
            return [NotificationRecord.from_dict(item) for item in entry.payload]
        except (InvariantViolation, ValueError, TypeError) as e:
            logger.warning(f"Cached notifications unreadable, ignoring: {e}")
            return []

    def load_cached(self) -> bool:
        """
        Restore state from the cache. Never fetches.

        Returns True if cached content is available to render; False means
        the caller should show the empty state (never synced, or the cache
        is unreadable).
        """
        if not self.cache.has_synced_before():
            logger.info("No previous sync; starting from empty state")
            return False

        followers = self._cached_users(FOLLOWERS) or []
        following = self._cached_users(FOLLOWING) or []
        notifications = self._cached_notifications()
        metrics = self.cache.get(DASHBOARD_METRICS)
        last_updated = self.cache.last_updated()

        snapshot = reconcile(followers, following, captured_at=last_updated or self.clock())
        self.generator.advance_past(n.id for n in notifications)

        self._followers = snapshot.followers
        self.ledger.reset(snapshot.following, notifications)
        self._snapshot = snapshot
        self._snapshot_version = self.ledger.version
        self._last_synced = snapshot
        self.last_updated = last_updated

        if metrics:
            self.dashboard_metrics = metrics.payload
            self.has_data = True
        logger.info(
            f"Loaded cache: {len(followers)} followers, {len(following)} following, "
            f"{len(notifications)} notifications"
        )
        return self.has_data

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self) -> dict:
        """
        Run one sync cycle: fetch, reconcile, then write through.

        Overlapping calls are ignored (``{"status": "skipped"}``). A fetch
        failure raises ``SourceFetchFailure`` and leaves cache and in-memory
        state untouched; so does cancellation, since nothing is written until
        the fetch has returned.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in flight; ignoring overlapping request")
            return {"status": "skipped"}

        try:
            try:
                payload = await self.source.fetch_follower_relationships()
            except SourceFetchFailure as e:
                logger.warning(f"Sync failed: {e}")
                raise
            except Exception as e:
                logger.exception("Sync failed in relationship source")
                raise SourceFetchFailure(0, str(e)) from e

            if not isinstance(payload, dict):
                raise SourceFetchFailure(0, f"source returned {type(payload).__name__}")
            followers = _users_from_payload(payload, "followers")
            following = _users_from_payload(payload, "following")

            # Nothing below awaits, so cancellation cannot leave a partial commit.
            now = self.clock()
            current = reconcile(followers, following, captured_at=now)
            previous = self._last_synced

            fresh = self.generator.build_feed(
                previous,
                current,
                self.config.max_new_follower_notifications,
                self.config.max_unfollow_notifications,
                now,
                milestones=self.config.follower_milestones,
                detect_lost_followers=self.config.detect_lost_followers,
            )
            feed = merge_feeds(fresh, self.ledger.notifications, self.config.notification_cache_limit)
            metrics = build_dashboard_metrics(current, now, self.config.trend_bucket_count)
            profile = build_profile_summary(current)
            profile["config_version"] = self.config.config_version

            cache_written = self.cache.put_many({
                FOLLOWERS: [u.to_dict() for u in current.followers],
                FOLLOWING: [u.to_dict() for u in current.following],
                NOTIFICATIONS: [n.to_dict() for n in feed],
                DASHBOARD_METRICS: metrics,
                USER_PROFILE: profile,
                HAS_SYNCED: True,
                LAST_UPDATED: now.isoformat(),
            }, now)

            self._followers = current.followers
            self.ledger.reset(current.following, feed)
            self._snapshot = current
            self._snapshot_version = self.ledger.version
            self._last_synced = current
            self.dashboard_metrics = metrics
            self.last_updated = now
            self.has_data = True

            feed_ids = {n.id for n in feed}
            summary = {
                "status": "completed",
                "synced_at": now.isoformat(),
                **current.summary(),
                "new_notifications": sum(1 for n in fresh if n.id in feed_ids),
                "cache_written": cache_written,
            }
            logger.info(
                f"Sync completed: {summary['total_followers']} followers, "
                f"{summary['total_following']} following, "
                f"{summary['new_notifications']} new notifications"
            )
            return summary
        finally:
            self._sync_lock.release()

    # =========================================================================
    # Mutations
    # =========================================================================

    def _persist(self, following: bool = False, notifications: bool = False) -> bool:
        """Best-effort write-back after a local mutation."""
        payloads = {}
        if following:
            snapshot = self.snapshot
            self.dashboard_metrics = build_dashboard_metrics(
                snapshot, self.clock(), self.config.trend_bucket_count
            )
            payloads[FOLLOWING] = [u.to_dict() for u in snapshot.following]
            payloads[DASHBOARD_METRICS] = self.dashboard_metrics
        if notifications:
            payloads[NOTIFICATIONS] = [n.to_dict() for n in self.ledger.notifications]
        if not payloads:
            return True
        return self.cache.put_many(payloads, self.clock())

    def remove_following(self, user_id: str) -> Optional[UndoToken]:
        """Unfollow locally. Returns an undo token, or None for unknown ids."""
        token = self.ledger.remove_following(user_id)
        if token:
            self._persist(following=True)
        return token

    def delete_notification(self, notification_id: int) -> Optional[UndoToken]:
        token = self.ledger.delete_notification(notification_id)
        if token:
            self._persist(notifications=True)
        return token

    def undo(self, token: UndoToken) -> bool:
        restored = self.ledger.undo(token)
        if restored:
            if token.kind == RemovedFollowingEntry.kind:
                self._persist(following=True)
            else:
                self._persist(notifications=True)
        return restored

    def mark_read(self, notification_id: int) -> bool:
        found = self.ledger.mark_read(notification_id)
        if found:
            self._persist(notifications=True)
        return found

    def mark_all_read(self) -> int:
        changed = self.ledger.mark_all_read()
        if changed:
            self._persist(notifications=True)
        return changed
