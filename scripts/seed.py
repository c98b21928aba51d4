"""Database seeder for local development.

Creates users, articles, comments and a spread of likes / favorites whose
denormalized counters match the records, then rebuilds the Redis toggle
state so the fast store agrees with the database.
"""
import asyncio
import argparse
import random
import time
from datetime import datetime, timezone, timedelta

from sqlalchemy import func, select, update

from greenbook.cache import cache
from greenbook.database import engine, async_session, Base
from greenbook.models import User, Article, Comment, Tag, Like, Favorite, CommentLike
from greenbook.security import hash_password
from greenbook.services.reconcile_service import reconcile_kind
from greenbook.services.toggle_kinds import TOGGLE_KINDS

TAGS = ["python", "fastapi", "postgresql", "redis", "docker", "travel",
        "food", "photography", "books", "music", "fitness", "design"]


async def seed(small: bool = False):
    num_users = 10 if small else 50
    num_articles = 50 if small else 2000
    max_comments = 2 if small else 5

    print(f"Seeding: {num_users} users, {num_articles} articles")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    password_hash = hash_password("password")

    async with async_session() as session:
        tags = [Tag(name=name) for name in TAGS]
        session.add_all(tags)

        users = [
            User(
                username=f"user_{i:04d}",
                password_hash=password_hash,
                nickname=f"User {i}",
                email=f"user_{i:04d}@example.com",
            )
            for i in range(num_users)
        ]
        session.add_all(users)
        await session.flush()
        print(f"  Created {len(tags)} tags, {len(users)} users")

        for i in range(num_articles):
            created = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 365))
            author = random.choice(users)
            article = Article(
                title=f"Notes {i}: {random.choice(TAGS)}",
                slug=f"notes-{i}",
                content=f"This is the full content of article {i}. " * 20,
                summary=f"Thoughts on {random.choice(TAGS)}.",
                is_published=True,
                published_at=created,
                created_at=created,
                user_id=author.id,
            )
            article.tags = random.sample(tags, k=random.randint(1, 3))
            author.posts_count += 1
            session.add(article)
        await session.flush()

        article_ids = list((await session.execute(select(Article.id))).scalars())
        for article_id in article_ids:
            readers = random.sample(users, k=random.randint(0, num_users // 2))
            for reader in readers:
                session.add(Like(actor_id=reader.id, subject_id=article_id))
            for reader in readers[: len(readers) // 2]:
                session.add(Favorite(actor_id=reader.id, subject_id=article_id))
            for _ in range(random.randint(0, max_comments)):
                session.add(Comment(
                    content="Great post, thanks for sharing.",
                    user_id=random.choice(users).id,
                    article_id=article_id,
                ))
        await session.flush()

        await session.execute(
            update(Article).values(
                comment_count=select(func.count())
                .where(Comment.article_id == Article.id)
                .scalar_subquery()
            )
        )
        comment_ids = list((await session.execute(select(Comment.id))).scalars())
        for comment_id in comment_ids:
            for liker in random.sample(users, k=random.randint(0, 3)):
                session.add(CommentLike(actor_id=liker.id, subject_id=comment_id))
        await session.flush()

        # Counters (and the Redis mirror) are derived from the records.
        await cache.connect()
        try:
            for kind in TOGGLE_KINDS.values():
                await reconcile_kind(session, cache, kind)
        finally:
            await cache.disconnect()
        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Articles: {len(article_ids)}  Comments: {len(comment_ids)}")


def main():
    parser = argparse.ArgumentParser(description="Seed the greenbook database")
    parser.add_argument("--small", action="store_true", help="Use a small dataset")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
