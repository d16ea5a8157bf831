"""Test notification feed generation."""
import pytest
from datetime import datetime, timezone, timedelta

from follower_sync.notifications import (
    NotificationFeedGenerator, merge_feeds, synthetic_timestamp, UNFOLLOW_OFFSET
)
from follower_sync.records import NotificationRecord, NotificationType, UserRecord
from follower_sync.relationships import reconcile


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def user(user_id, days_ago=0, name=""):
    return UserRecord(
        id=user_id, followed_at=NOW - timedelta(days=days_ago), display_name=name
    )


@pytest.fixture
def generator():
    return NotificationFeedGenerator()


@pytest.fixture
def snapshot():
    """Ten followers (f0 newest), f0/f1 followed back, plus four one-way follows."""
    followers = [user(f"f{i}", days_ago=i, name=f"Follower {i}") for i in range(10)]
    following = [user("f0"), user("f1")] + [user(f"g{i}", name=f"Gone {i}") for i in range(4)]
    return reconcile(followers, following, captured_at=NOW)


def assert_newest_first(feed):
    stamps = [n.timestamp for n in feed]
    assert stamps == sorted(stamps, reverse=True)


class TestFirstSync:
    """Feed built without a previous snapshot."""

    def test_counts_capped(self, generator, snapshot):
        feed = generator.build_feed(None, snapshot, 5, 3, NOW)

        follower_types = {NotificationType.NEW_FOLLOWER, NotificationType.MUTUAL_CONNECTION}
        assert sum(1 for n in feed if n.type in follower_types) == 5
        assert sum(1 for n in feed if n.type is NotificationType.UNFOLLOW) == 3
        assert_newest_first(feed)

    def test_mutual_followers_typed_as_mutual(self, generator, snapshot):
        feed = generator.build_feed(None, snapshot, 5, 0, NOW)
        by_user = {n.user_id: n for n in feed}

        assert by_user["f0"].type is NotificationType.MUTUAL_CONNECTION
        assert by_user["f0"].message == "Follower 0 followed you back!"
        assert by_user["f2"].type is NotificationType.NEW_FOLLOWER
        assert by_user["f2"].message == "Follower 2 started following you"
        assert by_user["f2"].timestamp == NOW - timedelta(days=2)

    def test_unfollow_timestamps_spaced_two_hours(self, generator, snapshot):
        feed = generator.build_feed(None, snapshot, 0, 3, NOW)

        assert [n.user_id for n in feed] == ["g0", "g1", "g2"]
        assert [n.timestamp for n in feed] == [
            NOW, NOW - timedelta(hours=2), NOW - timedelta(hours=4)
        ]
        assert feed[1].title == "Unfollowed"
        assert feed[1].message == "Gone 1 unfollowed you"

    def test_zero_limits_yield_empty_feed(self, generator, snapshot):
        assert generator.build_feed(None, snapshot, 0, 0, NOW) == []

    def test_limits_larger_than_lists(self, generator, snapshot):
        feed = generator.build_feed(None, snapshot, 50, 50, NOW)
        assert len(feed) == 10 + 4

    def test_name_falls_back_to_id(self, generator):
        snap = reconcile([UserRecord(id="user_9", followed_at=NOW)], [])
        feed = generator.build_feed(None, snap, 1, 0, NOW)
        assert feed[0].message == "user_9 started following you"


class TestDiffSync:
    """Feed built against a previous snapshot."""

    def test_only_new_followers_reported(self, generator, snapshot):
        previous = reconcile(snapshot.followers[2:], snapshot.following)
        feed = generator.build_feed(previous, snapshot, 5, 0, NOW)

        assert sorted(n.user_id for n in feed) == ["f0", "f1"]

    def test_no_change_reports_only_unfollows(self, generator, snapshot):
        feed = generator.build_feed(snapshot, snapshot, 5, 3, NOW)
        assert all(n.type is NotificationType.UNFOLLOW for n in feed)

    def test_lost_followers_opt_in(self, generator, snapshot):
        current = reconcile(snapshot.followers[1:], snapshot.following, captured_at=NOW)

        quiet = generator.build_feed(snapshot, current, 5, 0, NOW)
        assert quiet == []

        feed = generator.build_feed(snapshot, current, 5, 0, NOW, detect_lost_followers=True)
        assert len(feed) == 1
        assert feed[0].title == "Someone Unfollowed"
        assert feed[0].user_id == "f0"

    def test_lost_mutual_reported_once(self, generator, snapshot):
        """A mutual who stops following is one unfollow, not two."""
        current = reconcile(snapshot.followers[1:], snapshot.following, captured_at=NOW)

        feed = generator.build_feed(snapshot, current, 0, 10, NOW, detect_lost_followers=True)

        f0_records = [n for n in feed if n.user_id == "f0"]
        assert len(f0_records) == 1
        assert f0_records[0].title == "Unfollowed"
        assert len(feed) == len(current.not_following_back)

    def test_milestone_crossed(self, generator, snapshot):
        previous = reconcile(snapshot.followers[:4], snapshot.following)
        feed = generator.build_feed(previous, snapshot, 0, 0, NOW, milestones=[5, 100])

        assert len(feed) == 1
        assert feed[0].type is NotificationType.MILESTONE
        assert feed[0].message == "You reached 5 followers!"

    def test_milestones_ignored_on_first_sync(self, generator, snapshot):
        assert generator.build_feed(None, snapshot, 0, 0, NOW, milestones=[5]) == []


class TestIdSequence:
    """Notification ids are monotonic and never reused."""

    def test_ids_unique_across_builds(self, generator, snapshot):
        first = generator.build_feed(None, snapshot, 5, 3, NOW)
        second = generator.build_feed(None, snapshot, 5, 3, NOW)

        all_ids = [n.id for n in first + second]
        assert len(set(all_ids)) == len(all_ids)
        assert min(n.id for n in second) > max(n.id for n in first)

    def test_advance_past_restored_ids(self, generator):
        generator.advance_past([3, 17, 9])
        assert generator.next_id() == 18

    def test_advance_past_never_moves_back(self):
        generator = NotificationFeedGenerator(start_id=50)
        generator.advance_past([2])
        generator.advance_past([])
        assert generator.peek_next_id() == 50

    def test_synthetic_timestamp(self):
        assert synthetic_timestamp(0, NOW) == NOW
        assert synthetic_timestamp(3, NOW) == NOW - 3 * UNFOLLOW_OFFSET

    def test_custom_unfollow_offset(self, snapshot):
        generator = NotificationFeedGenerator(unfollow_offset=timedelta(minutes=30))
        feed = generator.build_feed(None, snapshot, 0, 2, NOW)
        assert feed[1].timestamp == NOW - timedelta(minutes=30)


class TestMergeFeeds:
    """Test merging fresh records into a stored feed."""

    def _record(self, id, type, user_id, hours_ago, is_read=False):
        return NotificationRecord(
            id=id, type=type, title="", message="",
            timestamp=NOW - timedelta(hours=hours_ago),
            user_id=user_id, is_read=is_read,
        )

    def test_repeated_unfollow_keeps_existing_record(self):
        existing = [self._record(1, "unfollow", "g0", 5, is_read=True)]
        new = [
            self._record(2, "unfollow", "g0", 0),
            self._record(3, "new_follower", "f9", 1),
        ]

        merged = merge_feeds(new, existing)

        assert [n.id for n in merged] == [3, 1]
        assert merged[1].is_read is True

    def test_duplicates_within_batch_dropped(self):
        new = [
            self._record(1, "unfollow", "g0", 0),
            self._record(2, "unfollow", "g0", 1),
            self._record(3, "new_follower", "g0", 2),
        ]

        merged = merge_feeds(new, [])

        assert [n.id for n in merged] == [1, 3]

    def test_records_without_user_never_deduped(self):
        existing = [self._record(1, "milestone", None, 5)]
        merged = merge_feeds([self._record(2, "milestone", None, 0)], existing)
        assert [n.id for n in merged] == [2, 1]

    def test_limit_keeps_newest(self):
        existing = [self._record(i, "new_follower", f"u{i}", i) for i in range(10)]
        merged = merge_feeds([], existing, limit=4)
        assert [n.id for n in merged] == [0, 1, 2, 3]
