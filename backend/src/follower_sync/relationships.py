"""Relationship set builder - derives mutuals and one-way follows."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from .records import RelationshipSnapshot, UserRecord, utc_now


def _dedupe(users: Iterable[UserRecord]) -> list[UserRecord]:
    """Collapse duplicate ids: first position, last value."""
    by_id: dict[str, UserRecord] = {}
    for user in users:
        by_id[user.id] = user
    return list(by_id.values())


def reconcile(
    followers: Iterable[UserRecord],
    following: Iterable[UserRecord],
    captured_at: datetime = None
) -> RelationshipSnapshot:
    """
    Cross-reference followers and following.

    mutuals            = followers that we follow back
    not_following_back = accounts we follow that don't follow us
    not_followed_back  = followers we don't follow back

    Derived sets are stable filters of their source list.
    """
    followers = _dedupe(followers)
    following = _dedupe(following)

    following_ids = {u.id for u in following}
    follower_ids = {u.id for u in followers}

    follows_back = [u.id in following_ids for u in followers]
    is_followed_by = [u.id in follower_ids for u in following]

    return RelationshipSnapshot(
        followers=tuple(followers),
        following=tuple(following),
        mutuals=tuple(u for u, back in zip(followers, follows_back) if back),
        not_following_back=tuple(u for u, back in zip(following, is_followed_by) if not back),
        not_followed_back=tuple(u for u, back in zip(followers, follows_back) if not back),
        captured_at=captured_at or utc_now(),
    )


def sort_newest_first(users: Iterable[UserRecord]) -> list[UserRecord]:
    """Sort by follow time descending, ties by id ascending."""
    # Two stable passes: secondary key first.
    ordered = sorted(users, key=lambda u: u.id)
    return sorted(ordered, key=lambda u: u.followed_at, reverse=True)


def partition_ids(snapshot: RelationshipSnapshot) -> dict[str, set[str]]:
    """Split the union of followers and following into both / following-only / followers-only."""
    return {
        "both": {u.id for u in snapshot.mutuals},
        "following_only": {u.id for u in snapshot.not_following_back},
        "followers_only": {u.id for u in snapshot.not_followed_back},
    }


def new_follower_ids(
    previous: RelationshipSnapshot,
    current: RelationshipSnapshot
) -> list[str]:
    """Follower ids present now but not in ``previous``, in current order."""
    before = previous.follower_ids
    return [u.id for u in current.followers if u.id not in before]


def lost_follower_ids(
    previous: RelationshipSnapshot,
    current: RelationshipSnapshot
) -> list[str]:
    """Follower ids present in ``previous`` but gone now, in previous order."""
    now = current.follower_ids
    return [u.id for u in previous.followers if u.id not in now]
