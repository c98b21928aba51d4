"""
Test infrastructure for the greenbook API.

Strategy
--------
- Each test gets its own file-backed SQLite database under ``tmp_path``
  (aiosqlite, foreign keys enforced).  Request sessions, the test's own
  session and the detached toggle jobs each check out their own pooled
  connection, as they would against the production database, so
  closing one session never touches another's transaction.  Tests
  commit their seed data before toggling and read results back through
  a fresh session.
- Redis is replaced in two ways: the cache-aside ``cache`` singleton is
  disconnected (``_redis = None``), which it tolerates, and the toggle
  coordinator gets an ``InMemoryFastStore`` implementing the same atomic
  contract.  Its operations yield to the event loop before their atomic
  section so concurrent toggles genuinely interleave.
- The background dispatcher runs one job at a time; tests call
  ``dispatcher.drain()`` before asserting on durable state.
"""
import asyncio
import fnmatch
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from greenbook.cache import FastStoreError, cache
from greenbook.database import Base, get_db
from greenbook.dependencies import get_toggle_coordinator
from greenbook.main import app
from greenbook.middleware import install_query_counter
from greenbook.models import Article, Comment, User
from greenbook.security import create_access_token
from greenbook.services.background import BackgroundDispatcher
from greenbook.services.toggle_service import ToggleCoordinator


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# In-memory fast store
# ---------------------------------------------------------------------------

class InMemoryFastStore:
    """Dict-backed stand-in for the Redis toggle primitives."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.invalidated: list[int | None] = []
        self.failing: set[str] = set()

    async def _enter(self, op: str) -> None:
        await asyncio.sleep(0)
        if op in self.failing:
            raise FastStoreError(f"{op} unavailable")

    async def set_if_absent(self, key: str, ttl: int | None = None) -> bool:
        await self._enter("set_if_absent")
        if key in self.data:
            return False
        self.data[key] = "1"
        return True

    async def delete(self, key: str) -> bool:
        await self._enter("delete")
        return self.data.pop(key, None) is not None

    async def incr(self, key: str) -> int:
        await self._enter("incr")
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        await self._enter("decr")
        value = int(self.data.get(key, 0)) - 1
        self.data[key] = str(value)
        return value

    async def get_counter(self, key: str) -> int | None:
        await self._enter("get_counter")
        value = self.data.get(key)
        return int(value) if value is not None else None

    async def reset_toggle_state(self, flag_pattern, flag_keys, counter_key, count) -> None:
        await self._enter("reset_toggle_state")
        for key in [k for k in self.data if fnmatch.fnmatchcase(k, flag_pattern)]:
            del self.data[key]
        for key in flag_keys:
            self.data[key] = "1"
        self.data[counter_key] = str(count)

    async def invalidate_article(self, article_id: int | None = None) -> None:
        self.invalidated.append(article_id)

    def has(self, key: str) -> bool:
        return key in self.data

    def counter(self, key: str) -> int:
        return int(self.data.get(key, 0))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine_test(tmp_path):
    """A fresh SQLite database file with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'greenbook.db'}")
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    install_query_counter(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine_test):
    """
    Session factory bound to the test database, also installed as the
    app's ``get_db`` override.
    """
    factory = async_sessionmaker(engine_test, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    yield factory
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fast_store() -> InMemoryFastStore:
    return InMemoryFastStore()


@pytest_asyncio.fixture
async def dispatcher(engine_test) -> BackgroundDispatcher:
    """Single-slot dispatcher, drained before the test database is disposed."""
    dispatcher = BackgroundDispatcher(max_concurrency=1)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def coordinator(fast_store, dispatcher, session_factory) -> ToggleCoordinator:
    return ToggleCoordinator(fast_store, session_factory, dispatcher)


@pytest_asyncio.fixture
async def async_client(coordinator) -> AsyncClient:
    """
    httpx.AsyncClient wired to the app via ASGITransport, with the toggle
    coordinator swapped for the in-memory one and the Redis cache disabled.
    """
    cache._redis = None
    app.dependency_overrides[get_toggle_coordinator] = lambda: coordinator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_toggle_coordinator, None)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

class Seeder:
    """Creates and commits rows so request sessions and detached jobs see them."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def user(self, username: str, **fields) -> User:
        fields.setdefault("nickname", username.title())
        return await self._save(User(username=username, **fields))

    async def article(self, author: User, title: str = "Hello", **fields) -> Article:
        fields.setdefault("slug", title.lower().replace(" ", "-"))
        fields.setdefault("content", "Body")
        return await self._save(Article(title=title, user_id=author.id, **fields))

    async def comment(self, author: User, article: Article, content: str = "Nice", **fields) -> Comment:
        return await self._save(
            Comment(content=content, user_id=author.id, article_id=article.id, **fields)
        )

    async def save(self, obj):
        return await self._save(obj)


@pytest.fixture
def seed(db_session) -> Seeder:
    return Seeder(db_session)


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _headers
