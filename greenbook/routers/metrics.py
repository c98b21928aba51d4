from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from greenbook.cache import cache
from greenbook.database import get_db
from greenbook.dependencies import get_toggle_coordinator
from greenbook.models import Article, Comment, CommentLike, Favorite, Like, User
from greenbook.schemas import MetricsResponse
from greenbook.services.toggle_service import ToggleCoordinator

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])


async def _count(db: AsyncSession, model, live_only: bool = False) -> int:
    q = select(func.count()).select_from(model)
    if live_only:
        q = q.where(model.deleted_at.is_(None))
    return (await db.execute(q)).scalar_one()


@router.get("", response_model=MetricsResponse)
async def get_metrics(
    db: AsyncSession = Depends(get_db),
    coordinator: ToggleCoordinator = Depends(get_toggle_coordinator),
):
    return MetricsResponse(
        total_articles=await _count(db, Article),
        total_comments=await _count(db, Comment),
        total_users=await _count(db, User),
        active_likes=await _count(db, Like, live_only=True),
        active_favorites=await _count(db, Favorite, live_only=True),
        active_comment_likes=await _count(db, CommentLike, live_only=True),
        cache_info=cache.stats,
        background_jobs=coordinator.dispatcher.stats,
    )
