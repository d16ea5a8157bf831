"""Local cache store - namespaced, timestamped payloads over a key-value backend.

Cache failures never escape this module: a backend error or a corrupt payload
reads as "absent" and a failed write reports False, so callers fall back to
an empty state or a network-only path.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import CacheRecord
from .records import parse_timestamp, utc_now, InvariantViolation


logger = logging.getLogger(__name__)


# Logical keys
DASHBOARD_METRICS = "dashboard_metrics"
NOTIFICATIONS = "notifications"
USER_PROFILE = "user_profile"
FOLLOWERS = "followers"
FOLLOWING = "following"
HAS_SYNCED = "has_synced_data"
LAST_UPDATED = "last_updated"

PAYLOAD_KEYS = (DASHBOARD_METRICS, NOTIFICATIONS, USER_PROFILE, FOLLOWERS, FOLLOWING)


class CacheUnavailable(Exception):
    """The backing store could not be read or written."""
    pass


# =============================================================================
# Backends
# =============================================================================

class KeyValueStore(Protocol):
    """Minimal storage contract consumed by the cache."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def set_many(self, items: dict[str, str]) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class MemoryKeyValueStore:
    """Dict-backed store for tests and ephemeral hosts."""

    def __init__(self):
        self.data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def set_many(self, items: dict[str, str]) -> None:
        self.data.update(items)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self.data if k.startswith(prefix)]


class SqlKeyValueStore:
    """Key-value store over the ``cache_records`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()

    def get(self, key: str) -> Optional[str]:
        db = self._session()
        try:
            record = db.get(CacheRecord, key)
            return record.value if record else None
        except SQLAlchemyError as e:
            raise CacheUnavailable(f"read {key}: {e}") from e
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, items: dict[str, str]) -> None:
        """Write all items in one transaction."""
        db = self._session()
        try:
            for key, value in items.items():
                record = db.get(CacheRecord, key)
                if record:
                    record.value = value
                    record.updated_at = utc_now()
                else:
                    db.add(CacheRecord(cache_key=key, value=value))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise CacheUnavailable(f"write {sorted(items)}: {e}") from e
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session()
        try:
            db.query(CacheRecord).filter(CacheRecord.cache_key == key).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise CacheUnavailable(f"delete {key}: {e}") from e
        finally:
            db.close()

    def keys(self, prefix: str = "") -> list[str]:
        db = self._session()
        try:
            rows = db.query(CacheRecord.cache_key).filter(
                CacheRecord.cache_key.startswith(prefix)
            ).all()
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            raise CacheUnavailable(f"list {prefix}: {e}") from e
        finally:
            db.close()


# =============================================================================
# Cache store
# =============================================================================

@dataclass(frozen=True)
class CacheEntry:
    """A cached payload. ``exists`` is False for misses and corrupt values."""
    key: str
    payload: Any = None
    written_at: Optional[datetime] = None
    exists: bool = False

    @classmethod
    def absent(cls, key: str) -> "CacheEntry":
        return cls(key=key)

    def __bool__(self) -> bool:
        return self.exists


_namespace_locks: dict[str, threading.RLock] = {}
_namespace_locks_guard = threading.Lock()


def _lock_for(namespace: str) -> threading.RLock:
    with _namespace_locks_guard:
        lock = _namespace_locks.get(namespace)
        if lock is None:
            lock = _namespace_locks[namespace] = threading.RLock()
        return lock


class LocalCacheStore:
    """
    Namespaced cache with a process-wide "has synced before" flag.

    Every value is stored as a JSON envelope ``{"written_at", "payload"}``
    under ``"{namespace}:{key}"``.
    """

    def __init__(self, store: KeyValueStore, namespace: str = "default"):
        self.store = store
        self.namespace = namespace
        self.lock = _lock_for(namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @staticmethod
    def _encode(payload: Any, timestamp: datetime) -> str:
        return json.dumps({"written_at": timestamp.isoformat(), "payload": payload})

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: str) -> CacheEntry:
        """Read a payload; any failure reads as absent."""
        with self.lock:
            try:
                raw = self.store.get(self._key(key))
            except CacheUnavailable as e:
                logger.warning(f"Cache read failed, treating {key} as absent: {e}")
                return CacheEntry.absent(key)

        if raw is None:
            return CacheEntry.absent(key)

        try:
            envelope = json.loads(raw)
            written_at = parse_timestamp(envelope["written_at"], "written_at")
            payload = envelope["payload"]
        except (ValueError, KeyError, TypeError, InvariantViolation) as e:
            logger.warning(f"Corrupt cache entry {key}, treating as absent: {e}")
            return CacheEntry.absent(key)

        return CacheEntry(key=key, payload=payload, written_at=written_at, exists=True)

    def has_synced_before(self) -> bool:
        entry = self.get(HAS_SYNCED)
        return bool(entry and entry.payload is True)

    def last_updated(self) -> Optional[datetime]:
        entry = self.get(LAST_UPDATED)
        if not entry:
            return None
        try:
            return parse_timestamp(entry.payload, LAST_UPDATED)
        except InvariantViolation:
            return None

    def is_expired(self, key: str, max_age_hours: int, now: datetime = None) -> bool:
        """True if ``key`` is missing or older than ``max_age_hours``."""
        entry = self.get(key)
        if not entry:
            return True
        now = now or utc_now()
        return now - entry.written_at >= timedelta(hours=max_age_hours)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(self, key: str, payload: Any, timestamp: datetime = None) -> bool:
        return self.put_many({key: payload}, timestamp)

    def put_many(self, payloads: dict[str, Any], timestamp: datetime = None) -> bool:
        """Write several payloads together. Returns False if the write failed."""
        timestamp = timestamp or utc_now()
        try:
            items = {
                self._key(key): self._encode(payload, timestamp)
                for key, payload in payloads.items()
            }
        except (TypeError, ValueError) as e:
            logger.warning(f"Unserializable cache payload {sorted(payloads)}: {e}")
            return False

        with self.lock:
            try:
                self.store.set_many(items)
            except CacheUnavailable as e:
                logger.warning(f"Cache write failed for {sorted(payloads)}: {e}")
                return False
        return True

    def mark_synced(self, timestamp: datetime = None) -> bool:
        timestamp = timestamp or utc_now()
        return self.put_many(
            {HAS_SYNCED: True, LAST_UPDATED: timestamp.isoformat()},
            timestamp,
        )

    def invalidate(self, key: str) -> bool:
        with self.lock:
            try:
                self.store.delete(self._key(key))
            except CacheUnavailable as e:
                logger.warning(f"Cache invalidate failed for {key}: {e}")
                return False
        return True

    def clear(self) -> int:
        """Drop every key in this namespace, sync flag included."""
        prefix = self._key("")
        with self.lock:
            try:
                keys = self.store.keys(prefix)
                for full_key in keys:
                    self.store.delete(full_key)
            except CacheUnavailable as e:
                logger.warning(f"Cache clear failed for namespace {self.namespace}: {e}")
                return 0
        return len(keys)

    def stats(self, keys: Iterable[str] = PAYLOAD_KEYS) -> dict:
        """Presence and write time for each payload key."""
        result = {
            "namespace": self.namespace,
            "has_synced_data": self.has_synced_before(),
            "last_updated": None,
            "entries": {},
        }
        last = self.last_updated()
        if last:
            result["last_updated"] = last.isoformat()

        for key in keys:
            entry = self.get(key)
            result["entries"][key] = {
                "exists": entry.exists,
                "written_at": entry.written_at.isoformat() if entry.written_at else None,
            }
        return result
