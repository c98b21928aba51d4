"""Durable toggle records (likes, favorites, comment likes) and their counters."""
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from greenbook.models import Comment
from greenbook.services.toggle_kinds import ToggleKind

logger = logging.getLogger(__name__)


class ToggleRecordRepository:
    """
    Repository for one toggle kind's record table and parent counter.

    Every query filters out tombstoned rows unless the caller asks for
    them with ``include_deleted=True``.  State changes are conditional
    UPDATEs, so restoring a live row or tombstoning a dead one is a
    reported no-op instead of a double transition.
    """

    def __init__(self, db: AsyncSession, kind: ToggleKind):
        self.db = db
        self.kind = kind
        self.model = kind.record_model

    async def find_record(self, actor_id: int, subject_id: int, include_deleted: bool = False):
        q = select(self.model).where(
            self.model.actor_id == actor_id,
            self.model.subject_id == subject_id,
        )
        if not include_deleted:
            q = q.where(self.model.deleted_at.is_(None))
        result = await self.db.execute(q)
        return result.scalar_one_or_none()

    async def is_engaged(self, actor_id: int, subject_id: int) -> bool:
        return await self.find_record(actor_id, subject_id) is not None

    async def insert_record(self, actor_id: int, subject_id: int):
        """Insert a live record; raises ``IntegrityError`` if the pair exists."""
        record = self.model(actor_id=actor_id, subject_id=subject_id)
        self.db.add(record)
        await self.db.flush()
        return record

    async def restore_record(self, record) -> bool:
        """Clear the tombstone and reset ``created_at``.  False if already live."""
        now = datetime.now(timezone.utc)
        stmt = (
            update(self.model)
            .where(self.model.id == record.id, self.model.deleted_at.is_not(None))
            .values(deleted_at=None, created_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            return False
        set_committed_value(record, "deleted_at", None)
        set_committed_value(record, "created_at", now)
        return True

    async def soft_delete_record(self, record) -> bool:
        """Set the tombstone.  False if the row was already tombstoned."""
        now = datetime.now(timezone.utc)
        stmt = (
            update(self.model)
            .where(self.model.id == record.id, self.model.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            return False
        set_committed_value(record, "deleted_at", now)
        return True

    async def increment_counter(self, subject_id: int, delta: int) -> None:
        """Apply ``counter = counter + delta`` on the parent row in one statement."""
        parent = self.kind.parent_model
        stmt = (
            update(parent)
            .where(parent.id == subject_id)
            .values({self.kind.counter_field: self.kind.counter_column + delta})
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                "%s counter update matched no row: subject=%d delta=%+d",
                self.kind.name, subject_id, delta,
            )

    async def read_counter(self, subject_id: int) -> int | None:
        parent = self.kind.parent_model
        result = await self.db.execute(
            select(self.kind.counter_column).where(parent.id == subject_id)
        )
        return result.scalar_one_or_none()

    async def set_counter(self, subject_id: int, value: int) -> None:
        parent = self.kind.parent_model
        await self.db.execute(
            update(parent)
            .where(parent.id == subject_id)
            .values({self.kind.counter_field: value})
            .execution_options(synchronize_session=False)
        )

    async def count_active(self, subject_id: int) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(self.model)
            .where(self.model.subject_id == subject_id, self.model.deleted_at.is_(None))
        )
        return result.scalar_one()

    async def active_actor_ids(self, subject_id: int) -> list[int]:
        result = await self.db.execute(
            select(self.model.actor_id)
            .where(self.model.subject_id == subject_id, self.model.deleted_at.is_(None))
            .order_by(self.model.actor_id)
        )
        return list(result.scalars().all())

    async def subject_exists(self, subject_id: int) -> bool:
        parent = self.kind.parent_model
        result = await self.db.execute(select(parent.id).where(parent.id == subject_id))
        return result.scalar_one_or_none() is not None

    async def subject_ids(self) -> list[int]:
        """Every parent row id, for whole-kind reconciliation."""
        parent = self.kind.parent_model
        result = await self.db.execute(select(parent.id).order_by(parent.id))
        return list(result.scalars().all())

    async def parent_article_id(self, subject_id: int) -> int | None:
        """The article whose cached detail view shows this subject's counter."""
        if self.kind.subject_type == "article":
            return subject_id
        result = await self.db.execute(
            select(Comment.article_id).where(Comment.id == subject_id)
        )
        return result.scalar_one_or_none()
