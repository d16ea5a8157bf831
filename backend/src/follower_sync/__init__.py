"""Follower Sync - offline-first follower reconciliation."""

__version__ = "0.1.0"
