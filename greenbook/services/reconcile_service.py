"""
Reconciliation: repair drift between Redis, the SQL counters and the
toggle records.

The non-deleted toggle records are the source of truth.  For one
subject, reconciliation rewrites the denormalized counter when it
disagrees with the live record count and rebuilds the Redis flags and
live counter from the live actor ids.  Run it while no toggles for the
subject are in flight (e.g. from ``scripts/reconcile.py`` during a quiet
window); jobs still queued in a dispatcher would be applied on top.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from greenbook.repositories.toggle_repository import ToggleRecordRepository
from greenbook.services.toggle_kinds import ToggleKind

logger = logging.getLogger(__name__)


class ToggleStateStore(Protocol):
    async def reset_toggle_state(
        self, flag_pattern: str, flag_keys: list[str], counter_key: str, count: int
    ) -> None: ...


@dataclass
class ReconcileReport:
    kind: str
    subject_id: int
    active: int
    durable_before: int | None
    repaired: bool


async def reconcile_subject(
    db: AsyncSession,
    fast_store: ToggleStateStore,
    kind: ToggleKind,
    subject_id: int,
) -> ReconcileReport:
    """
    Bring *subject_id*'s counter and Redis state in line with its live records.

    The SQL change is flushed, not committed; the caller owns the transaction.
    """
    repo = ToggleRecordRepository(db, kind)
    actor_ids = await repo.active_actor_ids(subject_id)
    active = len(actor_ids)

    durable_before = await repo.read_counter(subject_id)
    repaired = durable_before is not None and durable_before != active
    if repaired:
        logger.warning(
            "%s counter drift on subject=%d: stored=%d live=%d",
            kind.name, subject_id, durable_before, active,
        )
        await repo.set_counter(subject_id, active)
        await db.flush()

    await fast_store.reset_toggle_state(
        kind.flag_pattern(subject_id),
        [kind.flag_key(subject_id, actor_id) for actor_id in actor_ids],
        kind.counter_key(subject_id),
        active,
    )
    return ReconcileReport(
        kind=kind.name,
        subject_id=subject_id,
        active=active,
        durable_before=durable_before,
        repaired=repaired,
    )


async def reconcile_kind(
    db: AsyncSession,
    fast_store: ToggleStateStore,
    kind: ToggleKind,
) -> list[ReconcileReport]:
    """Reconcile every parent row of *kind*."""
    repo = ToggleRecordRepository(db, kind)
    reports = []
    for subject_id in await repo.subject_ids():
        reports.append(await reconcile_subject(db, fast_store, kind, subject_id))
    repaired = sum(1 for report in reports if report.repaired)
    logger.info("%s reconciled %d subject(s), %d repaired", kind.name, len(reports), repaired)
    return reports
