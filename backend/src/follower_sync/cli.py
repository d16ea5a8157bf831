"""CLI for Follower Sync."""
import asyncio
import argparse
import logging
import sys
import json

from .cache import LocalCacheStore, SqlKeyValueStore
from .config import settings
from .database import init_db, SessionLocal
from .session import ReconciliationSession
from .sources import (
    HttpRelationshipSource, MockRelationshipSource, SourceFetchFailure, build_source
)


def _cache() -> LocalCacheStore:
    return LocalCacheStore(SqlKeyValueStore(SessionLocal), settings.cache_namespace)


def _source(args):
    if getattr(args, "url", None):
        return HttpRelationshipSource(args.url, settings.source_api_key)
    if getattr(args, "mock", False):
        return MockRelationshipSource(seed=args.seed)
    return build_source(settings)


def cmd_init(args):
    """Initialize the cache database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


async def cmd_sync_async(args):
    """Run one sync cycle."""
    init_db()
    source = _source(args)
    session = ReconciliationSession(source, _cache())
    session.load_cached()

    try:
        print("Starting sync...")
        result = await session.sync()

        print("\nSync completed!")
        print(f"  Followers: {result['total_followers']}")
        print(f"  Following: {result['total_following']}")
        print(f"  Mutual: {result['mutual_count']}")
        print(f"  Not following back: {result['not_following_back_count']}")
        print(f"  Not followed back: {result['not_followed_back_count']}")
        print(f"  New notifications: {result['new_notifications']}")
        if not result["cache_written"]:
            print("  WARNING: cache write failed; results are in memory only")

        print("\n  Follower trend (7d): " + " ".join(f"{v:g}" for v in session.follower_trend()))
        print("  Unfollow trend (7d): " + " ".join(f"{v:g}" for v in session.unfollow_trend()))
        return result
    finally:
        if isinstance(source, HttpRelationshipSource):
            await source.close()


def cmd_sync(args):
    """Run one sync cycle (sync wrapper)."""
    try:
        return asyncio.run(cmd_sync_async(args))
    except SourceFetchFailure as e:
        print(f"\nSync failed: {e.message}")
        return None


def cmd_stats(args):
    """Show cache statistics."""
    init_db()
    stats = ReconciliationSession(MockRelationshipSource(), _cache()).cache_stats()

    if args.json:
        print(json.dumps(stats, indent=2))
        return

    print("Follower Sync Cache")
    print("=" * 40)
    print(f"Namespace: {stats['namespace']}")
    print(f"Synced before: {'yes' if stats['has_synced_data'] else 'no'}")
    print(f"Last updated: {stats['last_updated'] or 'never'}")
    print("-" * 40)
    for key, entry in stats["entries"].items():
        state = entry["written_at"] if entry["exists"] else "absent"
        print(f"  {key}: {state}")
    stale = [key for key, expired in stats["stale"].items() if expired]
    if stats["has_synced_data"] and stale:
        print(f"Stale: {', '.join(stale)}")


def cmd_notifications(args):
    """List cached notifications."""
    init_db()
    session = ReconciliationSession(MockRelationshipSource(), _cache())
    if not session.load_cached():
        print("No synced data yet - run `follower-sync sync` first")
        return

    notifications = list(session.notifications)
    if args.unread:
        notifications = [n for n in notifications if not n.is_read]

    if not notifications:
        print("No notifications")
        return

    print(f"Notifications ({session.unread_count} unread):")
    print("-" * 70)
    for n in notifications[:args.limit]:
        marker = " " if n.is_read else "*"
        print(f" {marker} #{n.id} [{n.type.value}] {n.title}")
        print(f"     {n.message}  ({n.timestamp:%Y-%m-%d %H:%M})")


def cmd_clear(args):
    """Drop every cached payload in the namespace."""
    init_db()
    removed = _cache().clear()
    print(f"Cleared {removed} cache entries")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Follower Sync - offline-first follower reconciliation"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # sync
    sync_parser = subparsers.add_parser("sync", help="Fetch and reconcile relationships")
    sync_parser.add_argument("--mock", action="store_true", help="Use synthetic data")
    sync_parser.add_argument("--seed", type=int, default=settings.mock_seed, help="Mock data seed")
    sync_parser.add_argument("--url", help="Relationship API base URL")
    sync_parser.set_defaults(func=cmd_sync)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show cache statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")
    stats_parser.set_defaults(func=cmd_stats)

    # notifications
    notif_parser = subparsers.add_parser("notifications", help="List cached notifications")
    notif_parser.add_argument("--unread", action="store_true", help="Only unread")
    notif_parser.add_argument("--limit", type=int, default=20, help="Number of notifications")
    notif_parser.set_defaults(func=cmd_notifications)

    # clear
    clear_parser = subparsers.add_parser("clear", help="Clear the cache")
    clear_parser.set_defaults(func=cmd_clear)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    result = args.func(args)
    if args.command == "sync" and result is None:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
