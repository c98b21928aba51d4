"""
Follow service: user follow / unfollow and the two relationship lists.

Unlike likes and favorites, following is written synchronously inside the
request transaction: the edge row and both users' counters commit
together.  Unfollowing tombstones the edge; following again restores it.
"""
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from greenbook.models import User, UserFollow
from greenbook.services.user_service import user_to_dict


class CannotFollowSelf(Exception):
    pass


async def _shift_counts(db: AsyncSession, follower_id: int, followed_id: int, delta: int) -> None:
    await db.execute(
        update(User)
        .where(User.id == follower_id)
        .values(following_count=User.following_count + delta)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(User)
        .where(User.id == followed_id)
        .values(followers_count=User.followers_count + delta)
        .execution_options(synchronize_session=False)
    )


async def _find_edge(db: AsyncSession, follower_id: int, followed_id: int) -> UserFollow | None:
    result = await db.execute(
        select(UserFollow).where(
            UserFollow.follower_id == follower_id,
            UserFollow.followed_id == followed_id,
        )
    )
    return result.scalar_one_or_none()


async def is_following(db: AsyncSession, follower_id: int, followed_id: int) -> bool:
    edge = await _find_edge(db, follower_id, followed_id)
    return edge is not None and not edge.is_deleted


async def toggle_follow(db: AsyncSession, follower_id: int, followed_id: int) -> bool | None:
    """
    Follow *followed_id* if not already following, otherwise unfollow.

    Returns True when now following, False when now not following, and
    None when the target user does not exist.  Two first-time follows
    racing on the same pair both insert; the loser raises
    ``IntegrityError`` on the edge primary key.
    """
    if follower_id == followed_id:
        raise CannotFollowSelf(follower_id)
    if await db.get(User, followed_id) is None:
        return None

    edge = await _find_edge(db, follower_id, followed_id)
    if edge is not None and not edge.is_deleted:
        edge.deleted_at = datetime.now(timezone.utc)
        await _shift_counts(db, follower_id, followed_id, -1)
        await db.flush()
        return False

    if edge is None:
        db.add(UserFollow(follower_id=follower_id, followed_id=followed_id))
    else:
        edge.deleted_at = None
        edge.created_at = datetime.now(timezone.utc)
    await _shift_counts(db, follower_id, followed_id, +1)
    await db.flush()
    return True


async def _list_edges(db: AsyncSession, join_on, where, offset: int, limit: int) -> dict:
    live = UserFollow.deleted_at.is_(None)
    total = (
        await db.execute(select(func.count()).select_from(UserFollow).where(where, live))
    ).scalar_one()
    q = (
        select(User)
        .join(UserFollow, join_on)
        .where(where, live)
        .order_by(UserFollow.created_at.desc(), User.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(q)
    return {"items": [user_to_dict(u) for u in result.scalars().all()], "total": total}


async def list_following(db: AsyncSession, user_id: int, offset: int = 0, limit: int = 20) -> dict:
    return await _list_edges(
        db, User.id == UserFollow.followed_id, UserFollow.follower_id == user_id, offset, limit
    )


async def list_followers(db: AsyncSession, user_id: int, offset: int = 0, limit: int = 20) -> dict:
    return await _list_edges(
        db, User.id == UserFollow.follower_id, UserFollow.followed_id == user_id, offset, limit
    )
