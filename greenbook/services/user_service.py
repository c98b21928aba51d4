"""
User service: registration, login and profiles for the User aggregate.

Two ways in: username + password (bcrypt hash stored on the user), and
WeChat mini-program login, where the account is keyed by the ``open_id``
WeChat returns for the login code.  Both end in a bearer token built by
``greenbook.security``.
"""
import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from greenbook.models import User
from greenbook.schemas import UserLogin, UserRegister, WeChatLoginRequest
from greenbook.security import hash_password, verify_password
from greenbook.wechat import WeChatClient

logger = logging.getLogger(__name__)

DEFAULT_WECHAT_NICKNAME = "WeChat user"


class UsernameTaken(Exception):
    pass


class PhoneRequired(Exception):
    """A first-time WeChat login must bind a phone number."""


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def user_to_dict(user: User) -> dict:
    """Public view of a user; never includes credentials or session keys."""
    return {
        "id": user.id,
        "username": user.username,
        "nickname": user.nickname,
        "avatar": user.avatar,
        "bio": user.bio,
        "followers_count": user.followers_count,
        "following_count": user.following_count,
        "posts_count": user.posts_count,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _article_summary_to_dict(article) -> dict:
    """Lightweight article summary embedded in a user profile."""
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
        "author": None,
        "tags": [],
    }


async def _reload(db: AsyncSession, user: User) -> User:
    await db.flush()
    await db.refresh(user)
    return user


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------

async def register_user(db: AsyncSession, data: UserRegister) -> User:
    """Create a password account; raises ``UsernameTaken`` on collision."""
    existing = await db.execute(select(User.id).where(User.username == data.username))
    if existing.first() is not None:
        raise UsernameTaken(data.username)

    user = User(
        username=data.username,
        password_hash=hash_password(data.password),
        nickname=data.nickname or data.username,
        email=data.email,
        phone=data.phone,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    logger.info("Registered user %r", data.username)
    return await _reload(db, user)


async def authenticate_user(db: AsyncSession, data: UserLogin) -> User | None:
    """Return the user when username and password match, else None."""
    result = await db.execute(select(User).where(User.username == data.username))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(data.password, user.password_hash):
        return None
    user.last_login_at = datetime.now(timezone.utc)
    return await _reload(db, user)


async def wechat_login(
    db: AsyncSession, client: WeChatClient, data: WeChatLoginRequest
) -> User:
    """
    Find or create the user behind a WeChat login code.

    Raises ``WeChatError`` when the code exchange fails and ``PhoneRequired``
    when a new account is attempted without a phone number.  Returning users
    get their stored ``session_key`` refreshed.
    """
    session = await client.code_to_session(data.code)

    result = await db.execute(select(User).where(User.open_id == session.open_id))
    user = result.scalar_one_or_none()
    now = datetime.now(timezone.utc)

    if user is None:
        if not data.phone:
            raise PhoneRequired(session.open_id)
        user = User(
            username=f"wx_{secrets.token_hex(6)}",
            open_id=session.open_id,
            union_id=session.union_id,
            session_key=session.session_key,
            phone=data.phone,
            nickname=data.nickname or DEFAULT_WECHAT_NICKNAME,
            avatar=data.avatar,
            last_login_at=now,
        )
        db.add(user)
        logger.info("Created WeChat user for open_id=%s", session.open_id)
    else:
        user.session_key = session.session_key
        user.last_login_at = now
        if session.union_id:
            user.union_id = session.union_id

    return await _reload(db, user)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

async def get_users(db: AsyncSession, offset: int = 0, limit: int = 20) -> list[dict]:
    """Users ordered newest first, without their articles."""
    q = select(User).order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit)
    result = await db.execute(q)
    return [user_to_dict(u) for u in result.scalars().all()]


async def get_user(db: AsyncSession, user_id: int) -> dict | None:
    """Profile of *user_id* with a summary of their articles, or None."""
    q = (
        select(User)
        .where(User.id == user_id)
        .options(selectinload(User.articles))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(q)
    user = result.unique().scalar_one_or_none()
    if user is None:
        return None

    data = user_to_dict(user)
    data["articles"] = [_article_summary_to_dict(a) for a in user.articles]
    return data
