"""
Per-activity serialization for sequence assignment.

seq_actual must be dense (1..N) and unique within an activity no matter how
many check-ins race.  "Read max, then insert max+1" is only correct inside a
critical section, which is built from two layers:

  - ActivityLocks: an in-process lock per activity id, so threads in one
    worker never interleave (this is all SQLite gets).
  - SELECT ... FOR UPDATE on the activity row, so workers in other
    processes block on PostgreSQL until the holder commits.

The (activity_id, seq_actual) unique constraint backs both up.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models import Activity, Visit


class ActivityLocks:
    """Registry of per-activity locks; entries are dropped once no one holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # activity_id -> [lock, users]

    @contextmanager
    def hold(self, activity_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(activity_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[activity_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


activity_locks = ActivityLocks()


def lock_activity(session: Session, activity_id: str) -> Optional[Activity]:
    """Load the activity row with a row-level lock held until the transaction ends."""
    return (
        session.query(Activity)
        .filter(Activity.id == activity_id)
        .with_for_update()
        .one_or_none()
    )


def next_seq_actual(session: Session, activity_id: str) -> int:
    """max(seq_actual) + 1 for the activity, or 1 if it has no visits yet."""
    current = (
        session.query(func.max(Visit.seq_actual))
        .filter(Visit.activity_id == activity_id)
        .scalar()
    )
    return (current or 0) + 1
