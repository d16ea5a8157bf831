"""Dashboard payloads derived from a snapshot."""
from __future__ import annotations

from datetime import datetime

from .records import RelationshipSnapshot
from .relationships import sort_newest_first
from .trends import follower_trend, unfollow_trend, WEEK_BUCKETS


# Estimated period-over-period change shown next to each card
CHANGE_RATES = {
    "Total Followers": 0.05,
    "Following": 0.03,
    "Unfollows": 0.10,
    "Mutual Connections": 0.08,
}

ACTIVITY_HISTORY_PER_KIND = 10
ACTIVITY_HISTORY_LIMIT = 20


def _card(title: str, count: int, sign: str = "+", weekly_data: list[float] = None) -> dict:
    card = {
        "title": title,
        "value": str(count),
        "change": f"{sign}{int(count * CHANGE_RATES[title])}",
    }
    if weekly_data is not None:
        card["weekly_data"] = weekly_data
    return card


def build_dashboard_metrics(
    snapshot: RelationshipSnapshot,
    now: datetime,
    bucket_count: int = WEEK_BUCKETS
) -> list[dict]:
    """Four summary cards; followers get a cumulative trend, unfollows a daily one."""
    return [
        _card(
            "Total Followers", len(snapshot.followers),
            weekly_data=follower_trend(snapshot, now, bucket_count),
        ),
        _card("Following", len(snapshot.following)),
        _card(
            "Unfollows", len(snapshot.not_following_back), sign="-",
            weekly_data=unfollow_trend(snapshot, now, bucket_count),
        ),
        _card("Mutual Connections", len(snapshot.mutuals)),
    ]


def build_profile_summary(snapshot: RelationshipSnapshot, limit: int = ACTIVITY_HISTORY_LIMIT) -> dict:
    """Relationship counts plus a newest-first activity history."""
    activities = []

    for user in sort_newest_first(snapshot.followers)[:ACTIVITY_HISTORY_PER_KIND]:
        activities.append({
            "type": "new_follower",
            "user_id": user.id,
            "username": user.username,
            "timestamp": user.followed_at,
        })

    for user in sort_newest_first(snapshot.following)[:ACTIVITY_HISTORY_PER_KIND]:
        activities.append({
            "type": "started_following",
            "user_id": user.id,
            "username": user.username,
            "timestamp": user.followed_at,
        })

    activities.sort(key=lambda a: a["timestamp"], reverse=True)

    return {
        **snapshot.summary(),
        "captured_at": snapshot.captured_at.isoformat(),
        "mutual_connections": [u.id for u in snapshot.mutuals],
        "activity_history": [
            {**a, "timestamp": a["timestamp"].isoformat()} for a in activities[:limit]
        ],
    }
