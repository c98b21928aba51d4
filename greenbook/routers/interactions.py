from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession
from greenbook.database import get_db
from greenbook.dependencies import get_current_user, get_toggle_coordinator
from greenbook.models import User
from greenbook.repositories.toggle_repository import ToggleRecordRepository
from greenbook.schemas import ToggleResponse
from greenbook.services.toggle_kinds import ARTICLE_FAVORITE, ARTICLE_LIKE, COMMENT_LIKE, ToggleKind
from greenbook.services.toggle_service import ToggleCoordinator, ToggleOutcome

router = APIRouter(prefix="/api/v1", tags=["interactions"])

_MESSAGES = {
    ("like", ToggleOutcome.ENGAGED): "Liked",
    ("like", ToggleOutcome.DISENGAGED): "Like removed",
    ("favorite", ToggleOutcome.ENGAGED): "Added to favorites",
    ("favorite", ToggleOutcome.DISENGAGED): "Removed from favorites",
}


async def _toggle(
    coordinator: ToggleCoordinator,
    db: AsyncSession,
    kind: ToggleKind,
    actor: User,
    subject_id: int,
) -> dict:
    # Rejected here, before Redis is touched, so a missing subject leaves no flag behind.
    if not await ToggleRecordRepository(db, kind).subject_exists(subject_id):
        raise HTTPException(status_code=404, detail=f"{kind.subject_type.title()} not found")

    outcome = await coordinator.toggle(kind, actor.id, subject_id)
    if outcome is ToggleOutcome.FAILED:
        raise HTTPException(status_code=409, detail="Operation did not complete, please retry")
    return {
        "result": outcome.value,
        "active": outcome is ToggleOutcome.ENGAGED,
        "message": _MESSAGES[(kind.action, outcome)],
    }


@router.post("/like/{article_id}", response_model=ToggleResponse)
async def toggle_article_like(
    article_id: int = Path(gt=0),
    current_user: User = Depends(get_current_user),
    coordinator: ToggleCoordinator = Depends(get_toggle_coordinator),
    db: AsyncSession = Depends(get_db),
):
    return await _toggle(coordinator, db, ARTICLE_LIKE, current_user, article_id)


@router.post("/favorite/{article_id}", response_model=ToggleResponse)
async def toggle_article_favorite(
    article_id: int = Path(gt=0),
    current_user: User = Depends(get_current_user),
    coordinator: ToggleCoordinator = Depends(get_toggle_coordinator),
    db: AsyncSession = Depends(get_db),
):
    return await _toggle(coordinator, db, ARTICLE_FAVORITE, current_user, article_id)


@router.post("/comment-like/{comment_id}", response_model=ToggleResponse)
async def toggle_comment_like(
    comment_id: int = Path(gt=0),
    current_user: User = Depends(get_current_user),
    coordinator: ToggleCoordinator = Depends(get_toggle_coordinator),
    db: AsyncSession = Depends(get_db),
):
    return await _toggle(coordinator, db, COMMENT_LIKE, current_user, comment_id)
