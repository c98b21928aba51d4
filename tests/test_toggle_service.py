"""
Tests for the toggle coordinator (likes, favorites, comment likes).

The coordinator answers from the fast store alone; durable effects are
checked after ``dispatcher.drain()``, through a fresh session.
"""
import asyncio
import logging
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from greenbook.models import Favorite, Like
from greenbook.repositories.toggle_repository import ToggleRecordRepository
from greenbook.services.toggle_kinds import ARTICLE_FAVORITE, ARTICLE_LIKE, COMMENT_LIKE
from greenbook.services.toggle_service import InvalidToggleInput, ToggleOutcome


async def _durable(session_factory, kind, subject_id):
    """Return (stored counter, live actor ids) as a fresh session sees them."""
    async with session_factory() as db:
        repo = ToggleRecordRepository(db, kind)
        return await repo.read_counter(subject_id), await repo.active_actor_ids(subject_id)


async def _record(session_factory, kind, actor_id, subject_id):
    async with session_factory() as db:
        return await ToggleRecordRepository(db, kind).find_record(
            actor_id, subject_id, include_deleted=True
        )


# ---------------------------------------------------------------------------
# Engage / disengage basics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_toggle_engages(seed, coordinator, fast_store, dispatcher, session_factory):
    alice = await seed.user("alice")
    article = await seed.article(alice, id=42)

    outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, 42)

    assert outcome is ToggleOutcome.ENGAGED
    assert fast_store.has(f"article:like:42:{alice.id}")
    assert fast_store.counter("article:like_count:42") == 1

    await dispatcher.drain()
    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 1
    assert actors == [alice.id]


@pytest.mark.asyncio
async def test_second_toggle_disengages(seed, coordinator, fast_store, dispatcher, session_factory):
    alice = await seed.user("alice")
    article = await seed.article(alice, id=42)

    await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)
    outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)

    assert outcome is ToggleOutcome.DISENGAGED
    assert not fast_store.has(f"article:like:42:{alice.id}")
    assert fast_store.counter("article:like_count:42") == 0

    await dispatcher.drain()
    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 0
    assert actors == []

    record = await _record(session_factory, ARTICLE_LIKE, alice.id, article.id)
    assert record is not None
    assert record.deleted_at is not None


@pytest.mark.asyncio
async def test_reengage_restores_tombstoned_record(seed, coordinator, dispatcher, session_factory):
    """Like, unlike, like again: one row, restored, counter back to 1."""
    alice = await seed.user("alice")
    article = await seed.article(alice)

    for _ in range(3):
        await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)
    await dispatcher.drain()

    first = await _record(session_factory, ARTICLE_LIKE, alice.id, article.id)
    assert first.deleted_at is None

    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 1
    assert actors == [alice.id]

    async with session_factory() as db:
        rows = (await db.execute(select(func.count()).select_from(Like))).scalar_one()
    assert rows == 1


@pytest.mark.asyncio
async def test_kinds_are_independent(seed, coordinator, fast_store, dispatcher, session_factory):
    """Liking and favoriting the same article are separate toggles."""
    alice = await seed.user("alice")
    article = await seed.article(alice)

    assert await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id) is ToggleOutcome.ENGAGED
    assert await coordinator.toggle(ARTICLE_FAVORITE, alice.id, article.id) is ToggleOutcome.ENGAGED
    await dispatcher.drain()

    like_counter, _ = await _durable(session_factory, ARTICLE_LIKE, article.id)
    fav_counter, _ = await _durable(session_factory, ARTICLE_FAVORITE, article.id)
    assert like_counter == 1
    assert fav_counter == 1
    assert fast_store.has(f"article:favorite:{article.id}:{alice.id}")


@pytest.mark.asyncio
async def test_comment_like_updates_comment_counter(seed, coordinator, fast_store, dispatcher, session_factory):
    alice = await seed.user("alice")
    bob = await seed.user("bob")
    article = await seed.article(alice)
    comment = await seed.comment(alice, article)

    outcome = await coordinator.toggle(COMMENT_LIKE, bob.id, comment.id)
    assert outcome is ToggleOutcome.ENGAGED
    assert fast_store.has(f"comment:like:{comment.id}:{bob.id}")

    await dispatcher.drain()
    counter, actors = await _durable(session_factory, COMMENT_LIKE, comment.id)
    assert counter == 1
    assert actors == [bob.id]
    # the article detail showing the comment is invalidated
    assert fast_store.invalidated == [article.id]


@pytest.mark.asyncio
async def test_comment_like_restore_after_unlike(seed, coordinator, dispatcher, session_factory):
    alice = await seed.user("alice")
    article = await seed.article(alice)
    comment = await seed.comment(alice, article)

    await coordinator.toggle(COMMENT_LIKE, alice.id, comment.id)
    await coordinator.toggle(COMMENT_LIKE, alice.id, comment.id)
    await coordinator.toggle(COMMENT_LIKE, alice.id, comment.id)
    await dispatcher.drain()

    counter, actors = await _durable(session_factory, COMMENT_LIKE, comment.id)
    assert counter == 1
    assert actors == [alice.id]


@pytest.mark.asyncio
async def test_persisted_transition_invalidates_article_cache(seed, coordinator, fast_store, dispatcher):
    alice = await seed.user("alice")
    article = await seed.article(alice)

    await coordinator.toggle(ARTICLE_FAVORITE, alice.id, article.id)
    await dispatcher.drain()

    assert fast_store.invalidated == [article.id]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_toggles_for_one_pair_stay_consistent(
    seed, coordinator, fast_store, dispatcher, session_factory,
):
    """Whatever the interleaving, flag, counters and records agree afterwards."""
    alice = await seed.user("alice")
    article = await seed.article(alice)
    flag = ARTICLE_LIKE.flag_key(article.id, alice.id)

    results = await asyncio.gather(
        *(coordinator.toggle(ARTICLE_LIKE, alice.id, article.id) for _ in range(10))
    )

    engaged = results.count(ToggleOutcome.ENGAGED)
    disengaged = results.count(ToggleOutcome.DISENGAGED)
    assert engaged >= 1
    assert engaged - disengaged == (1 if fast_store.has(flag) else 0)
    assert fast_store.counter(ARTICLE_LIKE.counter_key(article.id)) == engaged - disengaged

    await dispatcher.drain()
    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == engaged - disengaged
    assert len(actors) == counter


@pytest.mark.asyncio
async def test_concurrent_actors_all_counted(seed, coordinator, fast_store, dispatcher, session_factory):
    author = await seed.user("author")
    article = await seed.article(author)
    fans = [await seed.user(f"fan{i}") for i in range(5)]

    results = await asyncio.gather(
        *(coordinator.toggle(ARTICLE_LIKE, fan.id, article.id) for fan in fans)
    )
    assert results == [ToggleOutcome.ENGAGED] * 5
    assert fast_store.counter(ARTICLE_LIKE.counter_key(article.id)) == 5

    await dispatcher.drain()
    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 5
    assert actors == sorted(fan.id for fan in fans)


@pytest.mark.asyncio
async def test_lost_delete_race_reports_failed(seed, coordinator, fast_store, dispatcher, session_factory):
    """Flag seen by SET NX but gone before DEL: the call fails, nothing else moves."""
    alice = await seed.user("alice")
    article = await seed.article(alice)
    flag = ARTICLE_LIKE.flag_key(article.id, alice.id)
    fast_store.data[flag] = "1"

    original_delete = fast_store.delete

    async def delete_after_rival(key):
        fast_store.data.pop(key, None)
        return await original_delete(key)

    fast_store.delete = delete_after_rival

    outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)

    assert outcome is ToggleOutcome.FAILED
    assert fast_store.counter(ARTICLE_LIKE.counter_key(article.id)) == 0
    assert dispatcher.pending == 0


# ---------------------------------------------------------------------------
# Fast store failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_set_if_absent_failure_reports_failed(seed, coordinator, fast_store, dispatcher, session_factory):
    alice = await seed.user("alice")
    article = await seed.article(alice, id=7)
    fast_store.failing.add("set_if_absent")

    outcome = await coordinator.toggle(ARTICLE_FAVORITE, alice.id, 7)

    assert outcome is ToggleOutcome.FAILED
    assert fast_store.data == {}
    await dispatcher.drain()
    assert dispatcher.stats["completed"] == 0
    assert await _record(session_factory, ARTICLE_FAVORITE, alice.id, article.id) is None


@pytest.mark.asyncio
async def test_delete_failure_reports_failed_and_keeps_flag(seed, coordinator, fast_store, dispatcher):
    alice = await seed.user("alice")
    article = await seed.article(alice)
    await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)
    fast_store.failing.add("delete")

    outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)

    assert outcome is ToggleOutcome.FAILED
    assert fast_store.has(ARTICLE_LIKE.flag_key(article.id, alice.id))
    assert fast_store.counter(ARTICLE_LIKE.counter_key(article.id)) == 1


@pytest.mark.asyncio
async def test_counter_failure_does_not_undo_transition(
    seed, coordinator, fast_store, dispatcher, session_factory, caplog,
):
    alice = await seed.user("alice")
    article = await seed.article(alice)
    fast_store.failing.add("incr")

    with caplog.at_level(logging.WARNING, logger="greenbook.services.toggle_service"):
        outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)

    assert outcome is ToggleOutcome.ENGAGED
    assert "counter bump" in caplog.text
    await dispatcher.drain()
    counter, _ = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 1


# ---------------------------------------------------------------------------
# Desync handling in the durable jobs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_engage_with_live_record_leaves_counter(seed, coordinator, dispatcher, session_factory, caplog):
    """Redis lost its flag but the record is live: no second count."""
    alice = await seed.user("alice")
    article = await seed.article(alice, like_count=1)
    await seed.save(Like(actor_id=alice.id, subject_id=article.id))

    with caplog.at_level(logging.WARNING):
        outcome = await coordinator.toggle(ARTICLE_LIKE, alice.id, article.id)
        await dispatcher.drain()

    assert outcome is ToggleOutcome.ENGAGED
    assert "already live" in caplog.text
    counter, actors = await _durable(session_factory, ARTICLE_LIKE, article.id)
    assert counter == 1
    assert actors == [alice.id]


@pytest.mark.asyncio
async def test_disengage_without_live_record_leaves_counter(
    seed, coordinator, fast_store, dispatcher, session_factory, caplog,
):
    """Flag present in Redis but no durable record: counter must not go negative."""
    alice = await seed.user("alice")
    article = await seed.article(alice)
    fast_store.data[ARTICLE_FAVORITE.flag_key(article.id, alice.id)] = "1"

    with caplog.at_level(logging.WARNING):
        outcome = await coordinator.toggle(ARTICLE_FAVORITE, alice.id, article.id)
        await dispatcher.drain()

    assert outcome is ToggleOutcome.DISENGAGED
    assert "disengage desync" in caplog.text
    counter, actors = await _durable(session_factory, ARTICLE_FAVORITE, article.id)
    assert counter == 0
    assert actors == []


@pytest.mark.asyncio
async def test_disengage_of_tombstoned_record_is_noop(seed, coordinator, fast_store, dispatcher, session_factory):
    alice = await seed.user("alice")
    article = await seed.article(alice)
    await seed.save(Favorite(actor_id=alice.id, subject_id=article.id, deleted_at=datetime.now(timezone.utc)))
    fast_store.data[ARTICLE_FAVORITE.flag_key(article.id, alice.id)] = "1"

    await coordinator.toggle(ARTICLE_FAVORITE, alice.id, article.id)
    await dispatcher.drain()

    counter, _ = await _durable(session_factory, ARTICLE_FAVORITE, article.id)
    assert counter == 0


@pytest.mark.asyncio
async def test_engage_on_missing_subject_fails_in_background(seed, coordinator, dispatcher, session_factory, caplog):
    """A subject deleted before its job runs trips the foreign key; no record is written."""
    alice = await seed.user("alice")

    with caplog.at_level(logging.WARNING):
        await coordinator.toggle(ARTICLE_LIKE, alice.id, 999)
        await dispatcher.drain()

    assert dispatcher.stats["failed"] == 1
    assert "Background job failed" in caplog.text
    assert "appeared concurrently" not in caplog.text
    assert await _record(session_factory, ARTICLE_LIKE, alice.id, 999) is None


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("actor_id,subject_id", [(0, 1), (1, 0), (-3, 1), (1, "5"), (True, 1)])
async def test_invalid_ids_rejected(coordinator, fast_store, actor_id, subject_id):
    with pytest.raises(InvalidToggleInput):
        await coordinator.toggle(ARTICLE_LIKE, actor_id, subject_id)
    assert fast_store.data == {}
