"""Trend aggregation - buckets follow events into daily series."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from .records import RelationshipSnapshot


DAY = timedelta(days=1)
WEEK_BUCKETS = 7

# Period selector lengths (days per bucket series)
PERIOD_BUCKETS = {
    "week": 7,
    "month": 30,
    "year": 365,
}


def days_between(now: datetime, event_time: datetime) -> int:
    """Whole days elapsed from ``event_time`` to ``now`` (floored)."""
    return (now - event_time) // DAY


def bucketize(
    timestamps: Iterable[datetime],
    bucket_count: int,
    now: datetime
) -> list[float]:
    """
    Count events per day, oldest bucket first.

    An event from today lands in the last bucket. Events older than
    ``bucket_count`` days, or dated in the future, are dropped.
    """
    buckets = [0.0] * bucket_count

    for ts in timestamps:
        days_diff = days_between(now, ts)
        if 0 <= days_diff < bucket_count:
            buckets[bucket_count - 1 - days_diff] += 1

    return buckets


def cumulative(raw: list[float]) -> list[float]:
    """Running total: cum[0] = raw[0], cum[i] = cum[i-1] + raw[i]."""
    result: list[float] = []
    total = 0.0
    for value in raw:
        total += value
        result.append(total)
    return result


def follower_trend(
    snapshot: RelationshipSnapshot,
    now: datetime,
    bucket_count: int = WEEK_BUCKETS
) -> list[float]:
    """Cumulative follower growth over the last ``bucket_count`` days."""
    raw = bucketize((u.followed_at for u in snapshot.followers), bucket_count, now)
    return cumulative(raw)


def unfollow_trend(
    snapshot: RelationshipSnapshot,
    now: datetime,
    bucket_count: int = WEEK_BUCKETS
) -> list[float]:
    """Daily (non-cumulative) counts for accounts not following back."""
    return bucketize((u.followed_at for u in snapshot.not_following_back), bucket_count, now)
