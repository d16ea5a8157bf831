"""Relationship data sources.

A source returns already-fetched follower/following lists. Failures are
reported as ``SourceFetchFailure``; there is no retry here, a caller that
wants one wraps the source.
"""
from __future__ import annotations

import logging
import random
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Protocol, AsyncGenerator

import httpx

from .records import InvariantViolation, UserRecord, engagement_score, utc_now
from .relationships import reconcile


logger = logging.getLogger(__name__)


class SourceFetchFailure(Exception):
    """The relationship source was unreachable or returned malformed data."""
    def __init__(self, status_code: int, message: str, response: dict = None):
        self.status_code = status_code
        self.message = message
        self.response = response or {}
        super().__init__(f"Relationship source {status_code}: {message}")


class RelationshipSource(Protocol):
    async def fetch_follower_relationships(self) -> dict: ...


def partition_payload(followers: list[UserRecord], following: list[UserRecord]) -> dict:
    """Build the already-partitioned payload shape from two raw lists."""
    snapshot = reconcile(followers, following)
    return {
        "followers": list(snapshot.followers),
        "following": list(snapshot.following),
        "notFollowingBack": list(snapshot.not_following_back),
        "notFollowedBack": list(snapshot.not_followed_back),
        "mutualConnections": list(snapshot.mutuals),
    }


# =============================================================================
# Mock source
# =============================================================================

FIRST_NAMES = [
    "sarah", "mike", "emma", "alex", "lisa", "john", "kate", "david",
    "sophia", "ryan", "olivia", "noah", "ava", "liam", "mia", "ethan",
    "isabella", "mason", "charlotte", "logan", "amelia", "lucas", "harper",
    "jackson", "evelyn",
]

TOPICS = [
    "creates", "fitness", "travel", "tech", "food", "music", "fashion",
    "art", "beauty", "comedy", "dance", "gaming", "lifestyle", "sports",
]


class MockRelationshipSource:
    """
    Deterministic synthetic relationships.

    Followers are spaced one day apart and following accounts two days apart,
    newest first. Every third follower is also followed, so mutuals and both
    one-way sets are populated.
    """

    def __init__(
        self,
        seed: int = 42,
        follower_count: int = 25,
        following_count: int = 30,
        now: datetime = None
    ):
        self.seed = seed
        self.follower_count = follower_count
        self.following_count = following_count
        self.now = now

    def _user(self, rng: random.Random, user_id: str, index: int, followed_at: datetime) -> UserRecord:
        first = FIRST_NAMES[index % len(FIRST_NAMES)]
        topic = rng.choice(TOPICS)
        username = f"{first}_{topic}"
        follower_count = 1000 + index * 500
        is_verified = index % 5 == 0
        return UserRecord(
            id=user_id,
            username=username,
            display_name=f"{first.title()} {topic.title()}",
            followed_at=followed_at,
            is_active=index % 5 != 0,
            engagement_score=engagement_score(follower_count, is_verified),
            is_verified=is_verified,
            follower_count=follower_count,
            avatar_url=f"https://i.pravatar.cc/150?img={(index % 70) + 1}",
        )

    def generate(self) -> tuple[list[UserRecord], list[UserRecord]]:
        rng = random.Random(self.seed)
        now = self.now or utc_now()

        followers = [
            self._user(rng, f"user_{i}", i, now - timedelta(days=i))
            for i in range(self.follower_count)
        ]

        following: list[UserRecord] = []
        mutual_pool = [u for i, u in enumerate(followers) if i % 3 == 0]
        for i in range(self.following_count):
            followed_at = now - timedelta(days=i * 2)
            if i < len(mutual_pool):
                # Same account, our own follow time
                source = mutual_pool[i]
                following.append(replace(source, followed_at=followed_at))
            else:
                following.append(self._user(rng, f"following_{i}", i, followed_at))

        return followers, following

    async def fetch_follower_relationships(self) -> dict:
        followers, following = self.generate()
        return partition_payload(followers, following)


# =============================================================================
# HTTP source
# =============================================================================

class HttpRelationshipSource:
    """JSON relationship API client with cursor pagination."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        page_size: int = 200,
        max_pages: Optional[int] = None,
        transport: httpx.AsyncBaseTransport = None
    ):
        self.page_size = page_size
        self.max_pages = max_pages
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(self, endpoint: str, params: dict = None) -> dict:
        """GET ``endpoint`` and return the decoded JSON body."""
        try:
            response = await self.client.get(endpoint, params=params)
        except httpx.HTTPError as e:
            raise SourceFetchFailure(0, f"{endpoint} unreachable: {e}") from e

        if response.status_code != 200:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"error": response.text}
            raise SourceFetchFailure(response.status_code, str(error_data), error_data)

        try:
            data = response.json()
        except ValueError as e:
            raise SourceFetchFailure(response.status_code, f"{endpoint} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise SourceFetchFailure(response.status_code, f"{endpoint} returned {type(data).__name__}")
        return data

    async def _paginate(self, endpoint: str, field: str) -> AsyncGenerator[list[dict], None]:
        """Yield pages of raw user dicts until the cursor runs out."""
        cursor = None
        page_count = 0

        while True:
            params = {"pageSize": self.page_size}
            if cursor:
                params["cursor"] = cursor

            data = await self._request(endpoint, params)
            users = data.get(field) or []
            if not isinstance(users, list):
                raise SourceFetchFailure(
                    200, f"{endpoint} returned {type(users).__name__} for '{field}'"
                )
            cursor = data.get("next_cursor")
            page_count += 1

            yield users

            if not cursor or not users or (self.max_pages and page_count >= self.max_pages):
                break

    async def _fetch_users(self, endpoint: str, field: str) -> list[UserRecord]:
        users: list[UserRecord] = []
        async for page in self._paginate(endpoint, field):
            for raw in page:
                try:
                    users.append(UserRecord.from_dict(raw))
                except (InvariantViolation, ValueError, TypeError) as e:
                    raise SourceFetchFailure(200, f"malformed record from {endpoint}: {e}") from e
        logger.info(f"Fetched {len(users)} records from {endpoint}")
        return users

    async def fetch_follower_relationships(self) -> dict:
        followers = await self._fetch_users("/followers", "followers")
        following = await self._fetch_users("/following", "following")
        return partition_payload(followers, following)


def build_source(config) -> RelationshipSource:
    """HTTP source when a base URL is configured, mock data otherwise."""
    if config.source_base_url:
        return HttpRelationshipSource(config.source_base_url, config.source_api_key)
    return MockRelationshipSource(seed=config.mock_seed)
