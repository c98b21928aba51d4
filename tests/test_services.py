"""
Direct service-layer tests: business logic without HTTP overhead.

These call service functions with a database session, covering query
paths and serialisation helpers the endpoint tests only reach indirectly.
"""
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from greenbook.models import Like, User
from greenbook.schemas import ArticleCreate, ArticleUpdate, CommentCreate, UserRegister
from greenbook.services import article_service, comment_service, follow_service, user_service


async def _create_user(db: AsyncSession, username: str = "svcuser") -> User:
    user = User(username=username, nickname="Service User")
    db.add(user)
    await db.flush()
    return user


# ---------------------------------------------------------------------------
# article_service
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_articles_empty(db_session: AsyncSession):
    result = await article_service.get_articles(db_session)
    assert result.total == 0
    assert result.items == []
    assert result.pages == 0


@pytest.mark.asyncio
async def test_create_article_via_service(db_session: AsyncSession):
    user = await _create_user(db_session)
    data = ArticleCreate(
        title="Service Test Article",
        content="Direct service test content",
        tags=["python", "fastapi", "python"],
    )
    result = await article_service.create_article(db_session, user.id, data)

    assert result["slug"] == "service-test-article"
    assert result["user_id"] == user.id
    assert result["published_at"] is not None
    assert sorted(t["name"] for t in result["tags"]) == ["fastapi", "python"]


@pytest.mark.asyncio
async def test_get_articles_invalid_sort_column_falls_back(db_session: AsyncSession):
    user = await _create_user(db_session)
    await article_service.create_article(db_session, user.id, ArticleCreate(title="A", content="x"))

    result = await article_service.get_articles(db_session, sort_by="password_hash")
    assert result.total == 1


@pytest.mark.asyncio
async def test_get_article_viewer_flags(db_session: AsyncSession):
    user = await _create_user(db_session)
    created = await article_service.create_article(db_session, user.id, ArticleCreate(title="Flags", content="x"))
    db_session.add(Like(actor_id=user.id, subject_id=created["id"]))
    await db_session.flush()

    as_author = await article_service.get_article(db_session, created["id"], viewer_id=user.id)
    anonymous = await article_service.get_article(db_session, created["id"])

    assert as_author["is_liked"] is True
    assert as_author["is_favorited"] is False
    assert anonymous["is_liked"] is False


@pytest.mark.asyncio
async def test_get_article_not_found(db_session: AsyncSession):
    assert await article_service.get_article(db_session, 99999) is None


@pytest.mark.asyncio
async def test_update_article_publish_sets_published_at(db_session: AsyncSession):
    user = await _create_user(db_session)
    draft = await article_service.create_article(
        db_session, user.id, ArticleCreate(title="Draft", content="x", is_published=False)
    )
    assert draft["published_at"] is None

    updated = await article_service.update_article(
        db_session, draft["id"], user.id, ArticleUpdate(is_published=True)
    )
    assert updated["is_published"] is True
    assert updated["published_at"] is not None


@pytest.mark.asyncio
async def test_update_article_by_other_user_raises(db_session: AsyncSession):
    owner = await _create_user(db_session, "owner")
    other = await _create_user(db_session, "other")
    article = await article_service.create_article(db_session, owner.id, ArticleCreate(title="T", content="x"))

    with pytest.raises(article_service.NotArticleAuthor):
        await article_service.update_article(db_session, article["id"], other.id, ArticleUpdate(title="Z"))
    with pytest.raises(article_service.NotArticleAuthor):
        await article_service.delete_article(db_session, article["id"], other.id)


@pytest.mark.asyncio
async def test_delete_nonexistent_article_service(db_session: AsyncSession):
    user = await _create_user(db_session)
    assert await article_service.delete_article(db_session, 99999, user.id) is False


def test_slugify_special_characters():
    assert article_service.slugify("Hello,   World!! -- Again_and again") == "hello-world-again-and-again"
    assert article_service.slugify("!!!") == ""


# ---------------------------------------------------------------------------
# comment_service
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_comment_bumps_comment_count(db_session: AsyncSession):
    user = await _create_user(db_session)
    article = await article_service.create_article(db_session, user.id, ArticleCreate(title="C", content="x"))

    await comment_service.add_comment(db_session, article["id"], user.id, CommentCreate(content="one"))
    await comment_service.add_comment(db_session, article["id"], user.id, CommentCreate(content="two"))

    detail = await article_service.get_article(db_session, article["id"])
    assert detail["comment_count"] == 2
    assert len(await comment_service.list_comments(db_session, article["id"])) == 2


@pytest.mark.asyncio
async def test_add_comment_nonexistent_article_service(db_session: AsyncSession):
    user = await _create_user(db_session)
    result = await comment_service.add_comment(db_session, 99999, user.id, CommentCreate(content="x"))
    assert result is None


# ---------------------------------------------------------------------------
# user_service / follow_service
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_duplicate_username_raises(db_session: AsyncSession):
    await user_service.register_user(db_session, UserRegister(username="taken", password="secret1"))
    with pytest.raises(user_service.UsernameTaken):
        await user_service.register_user(db_session, UserRegister(username="taken", password="secret2"))


@pytest.mark.asyncio
async def test_get_user_not_found_service(db_session: AsyncSession):
    assert await user_service.get_user(db_session, 99999) is None


@pytest.mark.asyncio
async def test_toggle_follow_shifts_counters(db_session: AsyncSession):
    alice = await _create_user(db_session, "alice")
    bob = await _create_user(db_session, "bob")

    assert await follow_service.toggle_follow(db_session, alice.id, bob.id) is True
    following = await follow_service.list_following(db_session, alice.id)
    assert following["total"] == 1

    assert await follow_service.toggle_follow(db_session, alice.id, bob.id) is False
    followers = await follow_service.list_followers(db_session, bob.id)
    assert followers == {"items": [], "total": 0}

    profile = await user_service.get_user(db_session, bob.id)
    assert profile["followers_count"] == 0


@pytest.mark.asyncio
async def test_toggle_follow_rejects_self(db_session: AsyncSession):
    alice = await _create_user(db_session, "alice")
    with pytest.raises(follow_service.CannotFollowSelf):
        await follow_service.toggle_follow(db_session, alice.id, alice.id)
