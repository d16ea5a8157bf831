"""Test typed records and their dict conversions."""
import pytest
from datetime import datetime, timezone, timedelta

from follower_sync.records import (
    InvariantViolation, NotificationRecord, NotificationType,
    RelationshipSnapshot, UserRecord, engagement_level, engagement_score,
    parse_timestamp, utc_now
)


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Test timestamp parsing."""

    def test_parses_zulu_suffix(self):
        ts = parse_timestamp("2024-06-01T12:00:00Z", "followed_at")
        assert ts == NOW

    def test_passes_aware_datetime_through(self):
        assert parse_timestamp(NOW, "followed_at") is NOW

    def test_naive_datetime_rejected(self):
        with pytest.raises(InvariantViolation, match="timezone-aware"):
            parse_timestamp(datetime(2024, 6, 1), "followed_at")

    def test_missing_value_rejected(self):
        with pytest.raises(InvariantViolation, match="followed_at is required"):
            parse_timestamp(None, "followed_at")

    def test_garbage_rejected(self):
        with pytest.raises(InvariantViolation, match="unparseable"):
            parse_timestamp("yesterday", "followed_at")

    def test_utc_now_is_timezone_aware(self):
        assert utc_now().tzinfo == timezone.utc


class TestUserRecord:
    """Test user record validation and conversion."""

    def test_empty_id_rejected(self):
        with pytest.raises(InvariantViolation, match="id is required"):
            UserRecord(id="", followed_at=NOW)

    def test_naive_follow_time_rejected(self):
        with pytest.raises(InvariantViolation):
            UserRecord(id="u1", followed_at=datetime(2024, 6, 1))

    def test_from_dict_accepts_camel_case(self):
        """Source payloads use camelCase keys."""
        user = UserRecord.from_dict({
            "id": "u1",
            "username": "sarah_creates",
            "displayName": "Sarah Creates",
            "followDate": "2024-06-01T12:00:00+00:00",
            "isVerified": True,
            "followerCount": 1500,
            "profileImage": "https://example.com/a.jpg",
        })

        assert user.display_name == "Sarah Creates"
        assert user.followed_at == NOW
        assert user.is_verified is True
        assert user.follower_count == 1500
        assert user.avatar_url == "https://example.com/a.jpg"

    def test_from_dict_numeric_id_becomes_string(self):
        user = UserRecord.from_dict({"id": 12345, "followed_at": NOW.isoformat()})
        assert user.id == "12345"

    def test_from_dict_missing_follow_time_raises(self):
        with pytest.raises(InvariantViolation):
            UserRecord.from_dict({"id": "u1", "username": "nobody"})

    def test_to_dict_round_trips(self):
        user = UserRecord(id="u1", followed_at=NOW, username="mike_tech", follower_count=10)
        assert UserRecord.from_dict(user.to_dict()) == user

    def test_from_dict_string_flags(self):
        """String flags are parsed, not truth-tested."""
        user = UserRecord.from_dict({
            "id": "u1", "followed_at": NOW.isoformat(), "isVerified": "false", "isActive": "true"
        })
        assert user.is_verified is False
        assert user.is_active is True

    def test_from_dict_unrecognized_flag_rejected(self):
        with pytest.raises(InvariantViolation, match="is_verified"):
            UserRecord.from_dict({"id": "u1", "followed_at": NOW.isoformat(), "is_verified": "maybe"})

    def test_from_dict_derives_missing_engagement(self):
        user = UserRecord.from_dict({
            "id": "u1", "followed_at": NOW.isoformat(), "followerCount": 20000, "isVerified": True
        })
        assert user.engagement_score == 90
        assert user.engagement_level == "medium"
        assert user.to_dict()["engagement_level"] == "medium"

    def test_from_dict_keeps_explicit_engagement(self):
        user = UserRecord.from_dict({
            "id": "u1", "followed_at": NOW.isoformat(), "followerCount": 500000, "engagementScore": 0
        })
        assert user.engagement_score == 0
        assert user.engagement_level == "high"


class TestEngagement:
    """Test engagement estimates from follower counts."""

    def test_score_thresholds(self):
        assert engagement_score(500) == 50
        assert engagement_score(1001) == 60
        assert engagement_score(10001) == 70
        assert engagement_score(100001) == 80

    def test_verified_bonus_capped(self):
        assert engagement_score(500, is_verified=True) == 70
        assert engagement_score(100001, is_verified=True) == 100

    def test_levels(self):
        assert engagement_level(10000) == "low"
        assert engagement_level(10001) == "medium"
        assert engagement_level(100001) == "high"


class TestRelationshipSnapshot:
    """Test snapshot helpers."""

    def test_empty_snapshot(self):
        snapshot = RelationshipSnapshot.empty(NOW)
        assert snapshot.is_empty()
        assert snapshot.captured_at == NOW
        assert snapshot.summary() == {
            "total_followers": 0,
            "total_following": 0,
            "mutual_count": 0,
            "not_following_back_count": 0,
            "not_followed_back_count": 0,
        }

    def test_same_relationships_ignores_capture_time(self):
        a = RelationshipSnapshot.empty(NOW)
        b = RelationshipSnapshot.empty(NOW + timedelta(hours=1))
        assert a != b
        assert a.same_relationships(b)


class TestNotificationRecord:
    """Test notification record validation."""

    def test_type_string_is_coerced(self):
        record = NotificationRecord(
            id=1, type="unfollow", title="Unfollowed", message="x", timestamp=NOW
        )
        assert record.type is NotificationType.UNFOLLOW

    def test_unknown_type_rejected(self):
        with pytest.raises(InvariantViolation, match="unknown notification type"):
            NotificationRecord(id=1, type="poke", title="", message="", timestamp=NOW)

    def test_bool_id_rejected(self):
        with pytest.raises(InvariantViolation):
            NotificationRecord(id=True, type="system", title="", message="", timestamp=NOW)

    def test_from_dict_reads_camel_case_read_flag(self):
        record = NotificationRecord.from_dict({
            "id": 7,
            "type": "new_follower",
            "title": "New Follower",
            "message": "Emma started following you",
            "timestamp": "2024-06-01T12:00:00Z",
            "isRead": True,
            "userId": "user_3",
        })

        assert record.is_read is True
        assert record.user_id == "user_3"
        assert record.to_dict()["type"] == "new_follower"

    def test_from_dict_string_read_flag(self):
        record = NotificationRecord.from_dict({
            "id": 7, "type": "system", "timestamp": "2024-06-01T12:00:00Z", "is_read": "false"
        })
        assert record.is_read is False
