"""
Article service: business logic for the Article aggregate.

Design notes
------------
- List and detail reads go through the cache-aside pattern (Redis,
  falling back to the DB).  Cache keys encode every dimension that
  affects the result.  Viewer-specific fields (``is_liked``,
  ``is_favorited``, ``is_followed``, ``is_author``) are never cached;
  they are read from the durable records on every detail request.  The
  following feed is per viewer and bypasses the cache entirely.
- ``like_count`` / ``favorite_count`` / ``comment_count`` are written
  only through single-statement ``col = col + delta`` updates, by the
  toggle persistence jobs and by the comment service.  Toggle jobs drop
  the detail cache entry after they commit.
- Eager loading via ``joinedload`` (author) and ``selectinload`` (tags,
  comments) avoids N+1 queries.
- Service functions flush but do not commit; the transaction boundary
  is owned by the ``get_db`` dependency in the router layer.
"""
import math
import re
import time
from datetime import datetime, timezone

from sqlalchemy import asc, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload, selectinload

from greenbook.cache import article_detail_key, article_list_key, cache
from greenbook.config import settings
from greenbook.models import Article, Tag, User, UserFollow
from greenbook.repositories.toggle_repository import ToggleRecordRepository
from greenbook.schemas import ArticleCreate, ArticleUpdate, PaginatedResponse
from greenbook.services.follow_service import is_following
from greenbook.services.toggle_kinds import ARTICLE_FAVORITE, ARTICLE_LIKE


class NotArticleAuthor(Exception):
    """The acting user does not own the article they tried to change."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_]+")
_SLUG_DASH_RE = re.compile(r"-+")

# Columns that are safe to sort by; guards against arbitrary attribute access.
_SORTABLE_COLUMNS: frozenset[str] = frozenset(
    {"created_at", "published_at", "view_count", "title", "like_count", "favorite_count"}
)


def slugify(text: str) -> str:
    """Return a URL-safe, lowercase slug derived from *text*."""
    text = _SLUG_STRIP_RE.sub("", text.lower().strip())
    text = _SLUG_SPACE_RE.sub("-", text)
    return _SLUG_DASH_RE.sub("-", text).strip("-")


def _resolve_sort_column(sort_by: str):
    """Map *sort_by* onto a whitelisted column, defaulting to ``created_at``."""
    if sort_by in _SORTABLE_COLUMNS:
        return getattr(Article, sort_by)
    return Article.created_at


async def _unique_slug(db: AsyncSession, title: str, exclude_id: int | None = None) -> str:
    """Slug for *title*, suffixed with a timestamp if another article owns it."""
    slug = slugify(title) or "article"
    q = select(Article.id).where(Article.slug == slug)
    if exclude_id is not None:
        q = q.where(Article.id != exclude_id)
    if (await db.execute(q)).first() is not None:
        slug = f"{slug}-{time.time_ns()}"
    return slug


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _serialize_user(author: User | None) -> dict | None:
    if author is None:
        return None
    return {
        "id": author.id,
        "username": author.username,
        "nickname": author.nickname,
        "avatar": author.avatar,
        "bio": author.bio,
        "followers_count": author.followers_count,
        "following_count": author.following_count,
        "posts_count": author.posts_count,
        "created_at": author.created_at.isoformat() if author.created_at else None,
    }


def _article_to_dict(article: Article) -> dict:
    """Serialise an Article ORM instance to a plain dict (list view)."""
    return {
        "id": article.id,
        "title": article.title,
        "slug": article.slug,
        "summary": article.summary,
        "view_count": article.view_count,
        "like_count": article.like_count,
        "favorite_count": article.favorite_count,
        "comment_count": article.comment_count,
        "is_published": article.is_published,
        "published_at": article.published_at.isoformat() if article.published_at else None,
        "created_at": article.created_at.isoformat() if article.created_at else None,
        "user_id": article.user_id,
        "author": _serialize_user(article.author),
        "tags": [{"id": t.id, "name": t.name} for t in article.tags],
    }


def _comment_to_dict(comment) -> dict:
    return {
        "id": comment.id,
        "content": comment.content,
        "user_id": comment.user_id,
        "article_id": comment.article_id,
        "like_count": comment.like_count,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }


def _article_detail_to_dict(article: Article) -> dict:
    """Serialise an Article ORM instance to a plain dict (detail view)."""
    data = _article_to_dict(article)
    data["content"] = article.content
    data["comments"] = [_comment_to_dict(c) for c in article.comments]
    return data


async def _resolve_tags(db: AsyncSession, tag_names: list[str]) -> list[Tag]:
    """Return Tag rows for *tag_names*, creating the missing ones."""
    tags: list[Tag] = []
    for name in dict.fromkeys(tag_names):
        result = await db.execute(select(Tag).where(Tag.name == name))
        tag = result.scalar_one_or_none()
        if not tag:
            tag = Tag(name=name)
            db.add(tag)
            await db.flush()
        tags.append(tag)
    return tags


async def _load_article(db: AsyncSession, article_id: int) -> Article | None:
    q = (
        select(Article)
        .where(Article.id == article_id)
        .options(
            joinedload(Article.author),
            selectinload(Article.tags),
            selectinload(Article.comments),
        )
        .execution_options(populate_existing=True)
    )
    result = await db.execute(q)
    return result.unique().scalar_one_or_none()


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_articles(
    db: AsyncSession,
    page: int = 1,
    page_size: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> PaginatedResponse:
    """Return a paginated list of published articles, cached in Redis."""
    cache_key = article_list_key(page, page_size, sort_by, sort_order)
    cached = await cache.get(cache_key)
    if cached:
        return PaginatedResponse(**cached)

    count_q = (
        select(func.count())
        .select_from(Article)
        .where(Article.is_published.is_(True))
    )
    total: int = (await db.execute(count_q)).scalar_one()

    sort_col = _resolve_sort_column(sort_by)
    order_expr = desc(sort_col) if sort_order == "desc" else asc(sort_col)

    articles_q = (
        select(Article)
        .where(Article.is_published.is_(True))
        .options(joinedload(Article.author), selectinload(Article.tags))
        .order_by(order_expr, desc(Article.id))
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(articles_q)
    articles = result.unique().scalars().all()

    response = PaginatedResponse(
        items=[_article_to_dict(a) for a in articles],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )
    await cache.set(cache_key, response.model_dump(), ttl=settings.CACHE_TTL_LIST)
    return response


async def get_following_articles(
    db: AsyncSession, viewer_id: int, page: int = 1, page_size: int = 20
) -> PaginatedResponse:
    """
    Published articles by the users *viewer_id* currently follows, newest
    first.  Each item carries the viewer's ``is_liked``.
    """
    followed_ids = select(UserFollow.followed_id).where(
        UserFollow.follower_id == viewer_id,
        UserFollow.deleted_at.is_(None),
    )
    visible = (Article.is_published.is_(True), Article.user_id.in_(followed_ids))

    total: int = (
        await db.execute(select(func.count()).select_from(Article).where(*visible))
    ).scalar_one()

    result = await db.execute(
        select(Article)
        .where(*visible)
        .options(joinedload(Article.author), selectinload(Article.tags))
        .order_by(desc(Article.created_at), desc(Article.id))
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    articles = result.unique().scalars().all()

    liked: set[int] = set()
    if articles:
        like = ARTICLE_LIKE.record_model
        liked_q = select(like.subject_id).where(
            like.actor_id == viewer_id,
            like.deleted_at.is_(None),
            like.subject_id.in_([a.id for a in articles]),
        )
        liked = set((await db.execute(liked_q)).scalars().all())

    return PaginatedResponse(
        items=[{**_article_to_dict(a), "is_liked": a.id in liked} for a in articles],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )


async def get_article(db: AsyncSession, article_id: int, viewer_id: int | None = None) -> dict | None:
    """
    Return the full detail dict for *article_id*, counting one view.

    When *viewer_id* is given, ``is_liked`` / ``is_favorited`` reflect that
    user's live toggle records, ``is_followed`` their follow edge to the
    author and ``is_author`` whether they wrote it.  Returns None when the
    article does not exist.
    """
    result = await db.execute(
        update(Article)
        .where(Article.id == article_id)
        .values(view_count=Article.view_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None

    cache_key = article_detail_key(article_id)
    data = await cache.get(cache_key)
    if data is None:
        article = await _load_article(db, article_id)
        if article is None:
            return None
        data = _article_detail_to_dict(article)
        await cache.set(cache_key, data, ttl=settings.CACHE_TTL_DETAIL)

    data["is_liked"] = False
    data["is_favorited"] = False
    data["is_followed"] = False
    data["is_author"] = False
    if viewer_id is not None:
        data["is_liked"] = await ToggleRecordRepository(db, ARTICLE_LIKE).is_engaged(viewer_id, article_id)
        data["is_favorited"] = await ToggleRecordRepository(db, ARTICLE_FAVORITE).is_engaged(
            viewer_id, article_id
        )
        data["is_followed"] = await is_following(db, viewer_id, data["user_id"])
        data["is_author"] = viewer_id == data["user_id"]
    return data


async def create_article(db: AsyncSession, author_id: int, data: ArticleCreate) -> dict:
    """Create an article owned by *author_id* and return its detail dict."""
    article = Article(
        title=data.title,
        slug=await _unique_slug(db, data.title),
        content=data.content,
        summary=data.summary,
        is_published=data.is_published,
        user_id=author_id,
    )
    if data.tags:
        article.tags = await _resolve_tags(db, data.tags)
    if data.is_published:
        article.published_at = datetime.now(timezone.utc)

    db.add(article)
    await db.flush()
    await db.execute(
        update(User)
        .where(User.id == author_id)
        .values(posts_count=User.posts_count + 1)
        .execution_options(synchronize_session=False)
    )

    await cache.invalidate_article()
    return _article_detail_to_dict(await _load_article(db, article.id))


async def update_article(
    db: AsyncSession, article_id: int, author_id: int, data: ArticleUpdate
) -> dict | None:
    """
    Partially update an article and return its detail dict.

    Returns None when the article does not exist; raises
    ``NotArticleAuthor`` when *author_id* does not own it.
    """
    article = await _load_article(db, article_id)
    if article is None:
        return None
    if article.user_id != author_id:
        raise NotArticleAuthor(article_id)

    update_data = data.model_dump(exclude_unset=True)
    tags_data: list[str] | None = update_data.pop("tags", None)

    for field, value in update_data.items():
        setattr(article, field, value)

    if "title" in update_data:
        article.slug = await _unique_slug(db, update_data["title"], exclude_id=article_id)

    if data.is_published and not article.published_at:
        article.published_at = datetime.now(timezone.utc)

    if tags_data is not None:
        article.tags = await _resolve_tags(db, tags_data)

    await db.flush()
    await cache.invalidate_article(article_id)
    return _article_detail_to_dict(await _load_article(db, article_id))


async def delete_article(db: AsyncSession, article_id: int, author_id: int) -> bool:
    """
    Delete the article identified by *article_id*.

    Returns False when the article does not exist; raises
    ``NotArticleAuthor`` when *author_id* does not own it.
    """
    article = await db.get(Article, article_id)
    if article is None:
        return False
    if article.user_id != author_id:
        raise NotArticleAuthor(article_id)

    await db.delete(article)
    await db.execute(
        update(User)
        .where(User.id == author_id)
        .values(posts_count=User.posts_count - 1)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    await cache.invalidate_article(article_id)
    return True
