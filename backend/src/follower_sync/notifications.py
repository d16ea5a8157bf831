"""Notification feed generation from relationship snapshots.

Unfollow events carry no real detection time, so their timestamps are
synthesized from list position: ``now - index * offset`` (2 hours by
default). Consumers should treat them as ordering hints, not event times.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from .records import (
    NotificationRecord, NotificationType, RelationshipSnapshot, UserRecord, utc_now
)
from .relationships import new_follower_ids, lost_follower_ids


UNFOLLOW_OFFSET = timedelta(hours=2)
DEFAULT_FEED_LIMIT = 200


def synthetic_timestamp(
    index: int,
    now: datetime,
    offset: timedelta = UNFOLLOW_OFFSET
) -> datetime:
    """Approximate event time for the ``index``-th unfollow."""
    return now - index * offset


def sort_feed(records: Iterable[NotificationRecord]) -> list[NotificationRecord]:
    """Newest first; stable for equal timestamps."""
    return sorted(records, key=lambda n: n.timestamp, reverse=True)


class NotificationFeedGenerator:
    """
    Builds notification records from snapshot diffs.

    Owns the id sequence for one in-memory feed: ids only ever increase and
    are never handed out twice, even after the record is deleted.
    """

    def __init__(self, start_id: int = 1, unfollow_offset: timedelta = UNFOLLOW_OFFSET):
        self._next_id = start_id
        self.unfollow_offset = unfollow_offset

    def next_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def peek_next_id(self) -> int:
        return self._next_id

    def advance_past(self, ids: Iterable[int]) -> None:
        """Make sure future ids are greater than every id in ``ids``."""
        highest = max(ids, default=None)
        if highest is not None and highest >= self._next_id:
            self._next_id = highest + 1

    # -------------------------------------------------------------------------
    # Record factories
    # -------------------------------------------------------------------------

    def _follower_record(self, user: UserRecord, mutual: bool) -> NotificationRecord:
        name = user.display_name or user.username or user.id
        if mutual:
            return NotificationRecord(
                id=self.next_id(),
                type=NotificationType.MUTUAL_CONNECTION,
                title="New Mutual Connection!",
                message=f"{name} followed you back!",
                timestamp=user.followed_at,
                user_id=user.id,
                avatar_url=user.avatar_url,
            )
        return NotificationRecord(
            id=self.next_id(),
            type=NotificationType.NEW_FOLLOWER,
            title="New Follower",
            message=f"{name} started following you",
            timestamp=user.followed_at,
            user_id=user.id,
            avatar_url=user.avatar_url,
        )

    def _unfollow_record(self, user: UserRecord, timestamp: datetime) -> NotificationRecord:
        name = user.display_name or user.username or user.id
        return NotificationRecord(
            id=self.next_id(),
            type=NotificationType.UNFOLLOW,
            title="Unfollowed",
            message=f"{name} unfollowed you",
            timestamp=timestamp,
            user_id=user.id,
            avatar_url=user.avatar_url,
        )

    def _lost_follower_record(self, user_id: str, timestamp: datetime) -> NotificationRecord:
        return NotificationRecord(
            id=self.next_id(),
            type=NotificationType.UNFOLLOW,
            title="Someone Unfollowed",
            message="A user has unfollowed you",
            timestamp=timestamp,
            user_id=user_id,
        )

    def _milestone_record(self, threshold: int, timestamp: datetime) -> NotificationRecord:
        return NotificationRecord(
            id=self.next_id(),
            type=NotificationType.MILESTONE,
            title="Milestone Achieved!",
            message=f"You reached {threshold} followers!",
            timestamp=timestamp,
        )

    # -------------------------------------------------------------------------
    # Feed
    # -------------------------------------------------------------------------

    def build_feed(
        self,
        previous: Optional[RelationshipSnapshot],
        current: RelationshipSnapshot,
        max_new_followers: int,
        max_unfollow_events: int,
        now: datetime = None,
        *,
        milestones: Sequence[int] = (),
        detect_lost_followers: bool = False
    ) -> list[NotificationRecord]:
        """
        Turn a snapshot (and optionally its predecessor) into notifications.

        Without ``previous`` the first ``max_new_followers`` followers are
        reported; with it, only followers absent from ``previous``. Up to
        ``max_unfollow_events`` accounts that don't follow back are reported
        as unfollows. The result is sorted newest first.
        """
        now = now or utc_now()
        records: list[NotificationRecord] = []

        if previous is None:
            candidates = list(current.followers)
        else:
            fresh = set(new_follower_ids(previous, current))
            candidates = [u for u in current.followers if u.id in fresh]

        following_ids = current.following_ids
        for user in candidates[:max(max_new_followers, 0)]:
            records.append(self._follower_record(user, mutual=user.id in following_ids))

        reported_unfollows = set()
        for index, user in enumerate(current.not_following_back[:max(max_unfollow_events, 0)]):
            reported_unfollows.add(user.id)
            records.append(
                self._unfollow_record(user, synthetic_timestamp(index, now, self.unfollow_offset))
            )

        if previous is not None:
            if detect_lost_followers:
                # A lost mutual already has an unfollow record from this batch
                for user_id in lost_follower_ids(previous, current):
                    if user_id in reported_unfollows:
                        continue
                    records.append(self._lost_follower_record(user_id, now))

            before, after = len(previous.followers), len(current.followers)
            for threshold in sorted(milestones):
                if before < threshold <= after:
                    records.append(self._milestone_record(threshold, now))

        return sort_feed(records)


def merge_feeds(
    new: Sequence[NotificationRecord],
    existing: Sequence[NotificationRecord],
    limit: int = DEFAULT_FEED_LIMIT
) -> list[NotificationRecord]:
    """
    Merge freshly built records into a stored feed.

    A new record repeating the (type, user) of an existing one, or of an
    earlier record in the same batch, is dropped so re-syncs don't duplicate
    unfollow entries and keep their read state.
    """
    seen = {(n.type, n.user_id) for n in existing if n.user_id is not None}
    fresh = []
    for n in new:
        if n.user_id is not None:
            if (n.type, n.user_id) in seen:
                continue
            seen.add((n.type, n.user_id))
        fresh.append(n)
    return sort_feed([*fresh, *existing])[:limit]
