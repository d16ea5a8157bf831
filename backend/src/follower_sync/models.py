"""SQLAlchemy models backing the local cache.

The cache is a plain key-value table: the reconciliation layer never talks to
it directly, only through ``cache.SqlKeyValueStore``.
"""
from datetime import datetime, timezone


def utc_now():
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class CacheRecord(Base):
    """One cached value, keyed by ``namespace:key``."""
    __tablename__ = "cache_records"

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text)  # JSON envelope
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


Index("ix_cache_records_updated", CacheRecord.updated_at)
