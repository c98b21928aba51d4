"""
Comment service: comment creation and listing for the Article aggregate.

Comments cannot be edited or deleted through the API.  Creating one bumps
``Article.comment_count`` in the same statement style as the toggle
counters and drops the parent article's cache entries.  Comment likes are
handled by the toggle service (``COMMENT_LIKE``).
"""
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from greenbook.cache import cache
from greenbook.models import Article, Comment
from greenbook.schemas import CommentCreate
from greenbook.services.article_service import _comment_to_dict


async def add_comment(
    db: AsyncSession,
    article_id: int,
    author_id: int,
    data: CommentCreate,
) -> dict | None:
    """
    Append a comment by *author_id* to *article_id*.

    Returns the serialised comment, or None when the article does not exist.
    """
    result = await db.execute(
        update(Article)
        .where(Article.id == article_id)
        .values(comment_count=Article.comment_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None

    comment = Comment(content=data.content, user_id=author_id, article_id=article_id)
    db.add(comment)
    await db.flush()
    await db.refresh(comment)

    await cache.invalidate_article(article_id)
    return _comment_to_dict(comment)


async def list_comments(
    db: AsyncSession,
    article_id: int,
    offset: int = 0,
    limit: int = 20,
) -> list[dict] | None:
    """Oldest-first comments on *article_id*, or None if the article is missing."""
    if await db.get(Article, article_id) is None:
        return None
    q = (
        select(Comment)
        .where(Comment.article_id == article_id)
        .order_by(Comment.created_at, Comment.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(q)
    return [_comment_to_dict(c) for c in result.scalars().all()]
