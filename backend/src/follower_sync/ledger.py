"""Mutation/undo ledger for in-memory unfollows and notification deletes.

Undo windows are advisory: the UI decides when to stop offering undo and
calls ``discard`` (or ``expire``); nothing here runs a timer.

Reinsertion policy:
- restored following entries are appended (original position is not kept)
- restored notifications are prepended (shown as newly visible)
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Union

from .records import NotificationRecord, UserRecord, utc_now


@dataclass(frozen=True)
class UndoToken:
    """Opaque handle returned by a reversible mutation."""
    serial: int
    kind: str


@dataclass(frozen=True)
class RemovedFollowingEntry:
    user: UserRecord
    created_at: datetime = field(default_factory=utc_now)

    kind = "remove_following"
    position = "append"


@dataclass(frozen=True)
class DeletedNotification:
    notification: NotificationRecord
    created_at: datetime = field(default_factory=utc_now)

    kind = "delete_notification"
    position = "prepend"


UndoRecord = Union[RemovedFollowingEntry, DeletedNotification]


class MutationLedger:
    """
    Owns the mutable following list and notification feed for one session.

    Single-writer: one lock per ledger keeps a stray second thread from
    interleaving mutations, but callers are expected to mutate from one
    logical context.
    """

    def __init__(
        self,
        following: Iterable[UserRecord] = (),
        notifications: Iterable[NotificationRecord] = ()
    ):
        self._following: dict[str, UserRecord] = {}
        self._notifications: list[NotificationRecord] = []
        self._undo: dict[int, UndoRecord] = {}
        self._serial = 0
        self._lock = threading.RLock()
        self.version = 0
        self.reset(following, notifications)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def following(self) -> tuple[UserRecord, ...]:
        with self._lock:
            return tuple(self._following.values())

    @property
    def notifications(self) -> tuple[NotificationRecord, ...]:
        with self._lock:
            return tuple(self._notifications)

    def reset(
        self,
        following: Iterable[UserRecord],
        notifications: Iterable[NotificationRecord]
    ) -> None:
        """Replace state wholesale (after a sync). Pending undos are dropped."""
        with self._lock:
            self._following = {u.id: u for u in following}
            self._notifications = list(notifications)
            self._undo.clear()
            self.version += 1

    def pending_tokens(self) -> list[UndoToken]:
        with self._lock:
            return [UndoToken(serial, record.kind) for serial, record in self._undo.items()]

    def _push(self, record: UndoRecord) -> UndoToken:
        self._serial += 1
        self._undo[self._serial] = record
        return UndoToken(self._serial, record.kind)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def remove_following(self, user_id: str) -> Optional[UndoToken]:
        """Drop an account from the following list. Unknown id -> None."""
        with self._lock:
            if user_id not in self._following:
                return None
            user = self._following.pop(user_id)
            self.version += 1
            return self._push(RemovedFollowingEntry(user=user))

    def delete_notification(self, notification_id: int) -> Optional[UndoToken]:
        """Remove a notification. Unknown or already-deleted id -> None."""
        with self._lock:
            for index, notification in enumerate(self._notifications):
                if notification.id == notification_id:
                    del self._notifications[index]
                    self.version += 1
                    return self._push(DeletedNotification(notification=notification))
            return None

    def mark_read(self, notification_id: int) -> bool:
        with self._lock:
            for notification in self._notifications:
                if notification.id == notification_id:
                    if not notification.is_read:
                        notification.is_read = True
                        self.version += 1
                    return True
            return False

    def mark_all_read(self) -> int:
        with self._lock:
            changed = 0
            for notification in self._notifications:
                if not notification.is_read:
                    notification.is_read = True
                    changed += 1
            if changed:
                self.version += 1
            return changed

    # -------------------------------------------------------------------------
    # Undo
    # -------------------------------------------------------------------------

    def undo(self, token: UndoToken) -> bool:
        """Reverse a mutation. Consumed, expired or unknown tokens -> False."""
        with self._lock:
            record = self._undo.pop(token.serial, None)
            if record is None or record.kind != token.kind:
                if record is not None:
                    self._undo[token.serial] = record
                return False

            if isinstance(record, RemovedFollowingEntry):
                if record.user.id in self._following:
                    return False
                if record.position == "prepend":
                    self._following = {record.user.id: record.user, **self._following}
                else:
                    self._following[record.user.id] = record.user
            else:
                if any(n.id == record.notification.id for n in self._notifications):
                    return False
                if record.position == "prepend":
                    self._notifications.insert(0, record.notification)
                else:
                    self._notifications.append(record.notification)

            self.version += 1
            return True

    def discard(self, token: UndoToken) -> bool:
        """Forget an undo record without applying it."""
        with self._lock:
            return self._undo.pop(token.serial, None) is not None

    def expire(self, before: datetime) -> int:
        """Drop undo records created before ``before``."""
        with self._lock:
            stale = [s for s, r in self._undo.items() if r.created_at < before]
            for serial in stale:
                del self._undo[serial]
            return len(stale)
