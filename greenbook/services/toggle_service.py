"""
Toggle service: likes, favorites and comment likes.

Design notes
------------
- Redis decides.  ``SET flag NX`` succeeding means the actor was not
  engaged, so the call is an engage; failing means it is a disengage,
  confirmed by ``DEL flag`` actually removing the key.  Two concurrent
  calls for the same (actor, subject) therefore can never both engage.
- The caller gets its answer as soon as Redis has answered.  The SQL
  side (toggle record + denormalized counter) is written by a detached
  job submitted to the ``BackgroundDispatcher``, keyed by
  (kind, actor, subject) so jobs for one pair apply in order.
- Durable jobs are tombstone-aware and idempotent: engage restores a
  soft-deleted row rather than inserting a second one, and a live row
  already present is left alone without touching the counter.
  Disengage only decrements when it actually tombstoned a live row.
- Subject existence is checked by the HTTP layer before Redis is
  touched.  Durable failures, including a subject deleted in between,
  are logged by the dispatcher and left for ``reconcile_service`` to
  repair; they never reach the caller.
"""
from __future__ import annotations

import enum
import logging
from typing import Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greenbook.cache import FastStoreError
from greenbook.repositories.toggle_repository import ToggleRecordRepository
from greenbook.services.background import BackgroundDispatcher
from greenbook.services.toggle_kinds import ToggleKind

logger = logging.getLogger(__name__)


class ToggleOutcome(str, enum.Enum):
    ENGAGED = "engaged"
    DISENGAGED = "disengaged"
    FAILED = "failed"


class InvalidToggleInput(ValueError):
    """Actor or subject id is not a positive integer."""


class FastToggleStore(Protocol):
    """The atomic key-value operations the coordinator relies on."""

    async def set_if_absent(self, key: str, ttl: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def decr(self, key: str) -> int: ...

    async def invalidate_article(self, article_id: int | None = None) -> None: ...


class ToggleCoordinator:
    def __init__(
        self,
        fast_store: FastToggleStore,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: BackgroundDispatcher,
        flag_ttl: int | None = None,
    ) -> None:
        self.fast_store = fast_store
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.flag_ttl = flag_ttl

    async def toggle(self, kind: ToggleKind, actor_id: int, subject_id: int) -> ToggleOutcome:
        """
        Flip *actor_id*'s engagement with *subject_id* for *kind*.

        Returns ``ENGAGED`` or ``DISENGAGED`` once Redis reflects the new
        state, or ``FAILED`` when Redis is unreachable or a concurrent
        call removed the flag first.  ``FAILED`` calls are safe to retry.
        """
        if not _is_positive_id(actor_id) or not _is_positive_id(subject_id):
            raise InvalidToggleInput(
                f"{kind.name}: actor_id and subject_id must be positive integers, "
                f"got actor_id={actor_id!r} subject_id={subject_id!r}"
            )

        flag_key = kind.flag_key(subject_id, actor_id)
        counter_key = kind.counter_key(subject_id)
        job_key = (kind.name, actor_id, subject_id)

        try:
            created = await self.fast_store.set_if_absent(flag_key, ttl=self.flag_ttl)
        except FastStoreError:
            logger.warning("%s set-if-absent failed for %s", kind.name, flag_key, exc_info=True)
            return ToggleOutcome.FAILED

        # Jobs are submitted before any further await so that per-key job
        # order matches the order Redis applied the flag transitions.
        if created:
            self.dispatcher.submit(
                job_key,
                lambda: self._persist_engage(kind, actor_id, subject_id),
                name=f"{kind.name}:engage:{subject_id}:{actor_id}",
            )
            await self._bump_counter(kind, counter_key, +1)
            return ToggleOutcome.ENGAGED

        try:
            removed = await self.fast_store.delete(flag_key)
        except FastStoreError:
            logger.warning("%s delete failed for %s", kind.name, flag_key, exc_info=True)
            return ToggleOutcome.FAILED

        if not removed:
            logger.info("%s lost race on %s; caller may retry", kind.name, flag_key)
            return ToggleOutcome.FAILED

        self.dispatcher.submit(
            job_key,
            lambda: self._persist_disengage(kind, actor_id, subject_id),
            name=f"{kind.name}:disengage:{subject_id}:{actor_id}",
        )
        await self._bump_counter(kind, counter_key, -1)
        return ToggleOutcome.DISENGAGED

    async def _bump_counter(self, kind: ToggleKind, counter_key: str, delta: int) -> None:
        # The live counter is advisory; a failed bump does not undo the transition.
        try:
            if delta > 0:
                await self.fast_store.incr(counter_key)
            else:
                await self.fast_store.decr(counter_key)
        except FastStoreError:
            logger.warning("%s counter bump %+d failed for %s", kind.name, delta, counter_key, exc_info=True)

    # ------------------------------------------------------------------
    # Durable side (runs detached)
    # ------------------------------------------------------------------

    async def _persist_engage(self, kind: ToggleKind, actor_id: int, subject_id: int) -> None:
        async with self.session_factory() as db:
            repo = ToggleRecordRepository(db, kind)
            record = await repo.find_record(actor_id, subject_id, include_deleted=True)
            if record is None:
                try:
                    await repo.insert_record(actor_id, subject_id)
                except IntegrityError:
                    await db.rollback()
                    # Without a competing row the violation is the subject foreign key.
                    if await repo.find_record(actor_id, subject_id, include_deleted=True) is None:
                        raise
                    logger.warning(
                        "%s engage desync: record for actor=%d subject=%d appeared concurrently",
                        kind.name, actor_id, subject_id,
                    )
                    return
            elif not await repo.restore_record(record):
                logger.warning(
                    "%s engage desync: record %d for actor=%d subject=%d already live",
                    kind.name, record.id, actor_id, subject_id,
                )
                return

            await repo.increment_counter(subject_id, +1)
            article_id = await repo.parent_article_id(subject_id)
            await db.commit()

        logger.debug("%s persisted engage actor=%d subject=%d", kind.name, actor_id, subject_id)
        await self.fast_store.invalidate_article(article_id)

    async def _persist_disengage(self, kind: ToggleKind, actor_id: int, subject_id: int) -> None:
        async with self.session_factory() as db:
            repo = ToggleRecordRepository(db, kind)
            record = await repo.find_record(actor_id, subject_id)
            if record is None or not await repo.soft_delete_record(record):
                logger.warning(
                    "%s disengage desync: no live record for actor=%d subject=%d",
                    kind.name, actor_id, subject_id,
                )
                return

            await repo.increment_counter(subject_id, -1)
            article_id = await repo.parent_article_id(subject_id)
            await db.commit()

        logger.debug("%s persisted disengage actor=%d subject=%d", kind.name, actor_id, subject_id)
        await self.fast_store.invalidate_article(article_id)


def _is_positive_id(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0
