"""Rebuild toggle counters and Redis flags from the live toggle records."""
import asyncio
import argparse
import logging

from greenbook.cache import cache
from greenbook.database import async_session
from greenbook.services.reconcile_service import reconcile_kind, reconcile_subject
from greenbook.services.toggle_kinds import TOGGLE_KINDS, get_kind


async def reconcile(kind_names: list[str], subject_id: int | None) -> int:
    await cache.connect()
    repaired = 0
    try:
        async with async_session() as session:
            for name in kind_names:
                kind = get_kind(name)
                if subject_id is not None:
                    reports = [await reconcile_subject(session, cache, kind, subject_id)]
                else:
                    reports = await reconcile_kind(session, cache, kind)
                for report in reports:
                    if report.repaired:
                        repaired += 1
                        print(
                            f"  {report.kind} #{report.subject_id}: "
                            f"counter {report.durable_before} -> {report.active}"
                        )
                print(f"{name}: {len(reports)} subject(s) checked")
            await session.commit()
    finally:
        await cache.disconnect()
    return repaired


def main():
    parser = argparse.ArgumentParser(description="Reconcile like/favorite counters")
    parser.add_argument(
        "--kind",
        choices=sorted(TOGGLE_KINDS),
        action="append",
        help="Toggle kind to reconcile (repeatable; default: all kinds)",
    )
    parser.add_argument("--subject", type=int, help="Only reconcile this article/comment id")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")
    repaired = asyncio.run(reconcile(args.kind or sorted(TOGGLE_KINDS), args.subject))
    print(f"\nRepaired {repaired} counter(s)")


if __name__ == "__main__":
    main()
