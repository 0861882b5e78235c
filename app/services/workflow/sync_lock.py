"""
SyncLock — row lock serializing the count-and-release of one join.

A lock is a WorkflowSyncLock row unique on (instance_id, node_id). Acquiring
inserts the row inside a savepoint; a unique violation means another
arrival holds it. A row older than the TTL is treated as abandoned and
taken over. Release deletes the row in the caller's transaction, so on
PostgreSQL a concurrent insert blocks on the unique index until the holder
commits or rolls back.

    lock = SyncLock(instance.id, sync_node["id"], owner="branch-main-0_1", ttl_seconds=30)
    if lock.acquire():
        try:
            ...count and release...
        finally:
            lock.release()
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models import db
from app.models.workflow import WorkflowSyncLock

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone=True columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SyncLock:
    def __init__(
        self,
        instance_id: int,
        node_id: int,
        owner: str,
        ttl_seconds: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.instance_id = instance_id
        self.node_id = node_id
        self.owner = owner
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._row: WorkflowSyncLock | None = None

    @property
    def held(self) -> bool:
        return self._row is not None

    def acquire(self) -> bool:
        now = self._clock()
        existing = db.session.execute(
            select(WorkflowSyncLock)
            .where(
                WorkflowSyncLock.instance_id == self.instance_id,
                WorkflowSyncLock.node_id == self.node_id,
            )
            .with_for_update()
        ).scalar_one_or_none()

        if existing is not None:
            if now - _aware(existing.locked_at) < self.ttl:
                logger.info(
                    "Sync lock busy (held by %s)", existing.locked_by,
                    extra={"instance_id": self.instance_id, "node_id": self.node_id},
                )
                return False
            logger.warning(
                "Taking over stale sync lock held by %s since %s",
                existing.locked_by, existing.locked_at,
                extra={"instance_id": self.instance_id, "node_id": self.node_id},
            )
            existing.locked_by = self.owner
            existing.locked_at = now
            db.session.flush()
            self._row = existing
            return True

        row = WorkflowSyncLock(
            instance_id=self.instance_id,
            node_id=self.node_id,
            locked_by=self.owner,
            locked_at=now,
        )
        try:
            with db.session.begin_nested():
                db.session.add(row)
        except IntegrityError:
            logger.info(
                "Sync lock contended by a concurrent arrival",
                extra={"instance_id": self.instance_id, "node_id": self.node_id},
            )
            return False
        self._row = row
        return True

    def release(self) -> None:
        if self._row is None:
            return
        db.session.delete(self._row)
        db.session.flush()
        self._row = None
