"""Typed records for relationship reconciliation.

Raw source data arrives as loosely-typed dicts; everything past the source
boundary works on these records instead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class InvariantViolation(ValueError):
    """A record was built from data missing a required field."""
    pass


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvariantViolation(f"{field_name}: unparseable timestamp {value!r}") from e
    else:
        raise InvariantViolation(f"{field_name} is required")

    if ts.tzinfo is None:
        raise InvariantViolation(f"{field_name} must be timezone-aware")
    return ts


def _pick(data: dict, *names: str, default: Any = None) -> Any:
    """First present key among snake_case / camelCase aliases."""
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


def _parse_bool(value: Any, field_name: str) -> bool:
    """Booleans, 0/1, and the usual string spellings; anything else is rejected."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise InvariantViolation(f"{field_name}: not a boolean {value!r}")


def engagement_score(follower_count: int, is_verified: bool = False) -> int:
    """Estimated engagement (0-100) for accounts the source gives no score for."""
    score = 50

    if follower_count > 100000:
        score += 30
    elif follower_count > 10000:
        score += 20
    elif follower_count > 1000:
        score += 10

    if is_verified:
        score += 20

    return max(0, min(score, 100))


def engagement_level(follower_count: int) -> str:
    if follower_count > 100000:
        return "high"
    if follower_count > 10000:
        return "medium"
    return "low"


# =============================================================================
# Users and snapshots
# =============================================================================

@dataclass(frozen=True)
class UserRecord:
    """A follower or followed account as fetched from the source."""
    id: str
    followed_at: datetime
    username: str = ""
    display_name: str = ""
    is_active: bool = True
    engagement_score: int = 0
    is_verified: bool = False
    follower_count: int = 0
    avatar_url: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise InvariantViolation("UserRecord.id is required")
        if not isinstance(self.followed_at, datetime):
            raise InvariantViolation(f"UserRecord {self.id}: followed_at is required")
        if self.followed_at.tzinfo is None:
            raise InvariantViolation(f"UserRecord {self.id}: followed_at must be timezone-aware")

    @classmethod
    def from_dict(cls, data: dict) -> "UserRecord":
        """Build from a source or cache dict (snake_case or camelCase keys)."""
        if not isinstance(data, dict):
            raise InvariantViolation(f"expected a user mapping, got {type(data).__name__}")

        user_id = _pick(data, "id", "user_id", "userId")
        if user_id is None or user_id == "":
            raise InvariantViolation("UserRecord.id is required")

        is_verified = _parse_bool(_pick(data, "is_verified", "isVerified", default=False), "is_verified")
        follower_count = int(_pick(data, "follower_count", "followerCount", default=0))
        score = _pick(data, "engagement_score", "engagementScore")

        return cls(
            id=str(user_id),
            followed_at=parse_timestamp(
                _pick(data, "followed_at", "followDate", "follow_date"), "followed_at"
            ),
            username=_pick(data, "username", "userName", default=""),
            display_name=_pick(data, "display_name", "displayName", "name", default=""),
            is_active=_parse_bool(_pick(data, "is_active", "isActive", default=True), "is_active"),
            engagement_score=(
                int(score) if score is not None else engagement_score(follower_count, is_verified)
            ),
            is_verified=is_verified,
            follower_count=follower_count,
            avatar_url=_pick(data, "avatar_url", "profileImage", "avatar"),
        )

    @property
    def engagement_level(self) -> str:
        return engagement_level(self.follower_count)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "followed_at": self.followed_at.isoformat(),
            "is_active": self.is_active,
            "engagement_score": self.engagement_score,
            "engagement_level": self.engagement_level,
            "is_verified": self.is_verified,
            "follower_count": self.follower_count,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True)
class RelationshipSnapshot:
    """Result of one reconciliation pass.

    ``mutuals``, ``not_following_back`` and ``not_followed_back`` are derived
    from ``followers`` and ``following`` by ``relationships.reconcile``; build
    snapshots through that function rather than by hand.
    """
    followers: tuple[UserRecord, ...] = ()
    following: tuple[UserRecord, ...] = ()
    mutuals: tuple[UserRecord, ...] = ()
    not_following_back: tuple[UserRecord, ...] = ()
    not_followed_back: tuple[UserRecord, ...] = ()
    captured_at: datetime = field(default_factory=utc_now)

    @classmethod
    def empty(cls, captured_at: datetime = None) -> "RelationshipSnapshot":
        return cls(captured_at=captured_at or utc_now())

    @property
    def follower_ids(self) -> set[str]:
        return {u.id for u in self.followers}

    @property
    def following_ids(self) -> set[str]:
        return {u.id for u in self.following}

    def follows_back(self, user_id: str) -> bool:
        """True if a follower is also followed by us."""
        return user_id in self.following_ids

    def is_followed_by(self, user_id: str) -> bool:
        """True if an account we follow follows us."""
        return user_id in self.follower_ids

    def is_empty(self) -> bool:
        return not self.followers and not self.following

    def summary(self) -> dict:
        """Raw counts for summary metrics."""
        return {
            "total_followers": len(self.followers),
            "total_following": len(self.following),
            "mutual_count": len(self.mutuals),
            "not_following_back_count": len(self.not_following_back),
            "not_followed_back_count": len(self.not_followed_back),
        }

    def same_relationships(self, other: "RelationshipSnapshot") -> bool:
        """Deep equality ignoring ``captured_at``."""
        return (
            self.followers == other.followers
            and self.following == other.following
            and self.mutuals == other.mutuals
            and self.not_following_back == other.not_following_back
            and self.not_followed_back == other.not_followed_back
        )


# =============================================================================
# Notifications
# =============================================================================

class NotificationType(str, Enum):
    NEW_FOLLOWER = "new_follower"
    UNFOLLOW = "unfollow"
    MUTUAL_CONNECTION = "mutual_connection"
    MILESTONE = "milestone"
    SYSTEM = "system"


@dataclass
class NotificationRecord:
    """A feed entry. Only ``is_read`` changes after creation."""
    id: int
    type: NotificationType
    title: str
    message: str
    timestamp: datetime
    is_read: bool = False
    user_id: Optional[str] = None
    avatar_url: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.id, int) or isinstance(self.id, bool):
            raise InvariantViolation("NotificationRecord.id must be an integer")
        if not isinstance(self.type, NotificationType):
            try:
                self.type = NotificationType(self.type)
            except ValueError as e:
                raise InvariantViolation(f"unknown notification type {self.type!r}") from e
        if not isinstance(self.timestamp, datetime) or self.timestamp.tzinfo is None:
            raise InvariantViolation(f"NotificationRecord {self.id}: timestamp must be timezone-aware")

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRecord":
        if not isinstance(data, dict) or data.get("id") is None:
            raise InvariantViolation("NotificationRecord.id is required")
        return cls(
            id=int(data["id"]),
            type=data.get("type", NotificationType.SYSTEM.value),
            title=data.get("title", ""),
            message=data.get("message", ""),
            timestamp=parse_timestamp(data.get("timestamp"), "timestamp"),
            is_read=_parse_bool(_pick(data, "is_read", "isRead", default=False), "is_read"),
            user_id=_pick(data, "user_id", "userId"),
            avatar_url=_pick(data, "avatar_url", "avatar"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "is_read": self.is_read,
            "user_id": self.user_id,
            "avatar_url": self.avatar_url,
        }
