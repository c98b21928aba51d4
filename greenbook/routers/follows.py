from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from greenbook.database import get_db
from greenbook.dependencies import PaginationParams, get_current_user
from greenbook.models import User
from greenbook.schemas import FollowRequest, FollowResponse
from greenbook.services import follow_service

router = APIRouter(prefix="/api/v1/follow", tags=["follows"])


@router.post("", response_model=FollowResponse)
async def follow_action(
    data: FollowRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        following = await follow_service.toggle_follow(db, current_user.id, data.user_id)
    except follow_service.CannotFollowSelf:
        raise HTTPException(status_code=400, detail="You cannot follow yourself")
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Follow state changed concurrently, please retry")
    if following is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"following": following, "message": "Followed" if following else "Unfollowed"}


def _page(result: dict, pagination: PaginationParams) -> dict:
    return {
        "data": result["items"],
        "meta": {
            "total": result["total"],
            "page": pagination.page,
            "page_size": pagination.page_size,
        },
    }


@router.get("/following")
async def get_following(
    pagination: PaginationParams = Depends(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await follow_service.list_following(
        db, current_user.id, pagination.offset, pagination.page_size
    )
    return _page(result, pagination)


@router.get("/followers")
async def get_followers(
    pagination: PaginationParams = Depends(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await follow_service.list_followers(
        db, current_user.id, pagination.offset, pagination.page_size
    )
    return _page(result, pagination)
