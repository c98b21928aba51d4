from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from greenbook.database import get_db
from greenbook.dependencies import PaginationParams, get_current_user
from greenbook.models import User
from greenbook.schemas import (
    ArticleCreate,
    ArticleDetail,
    ArticleUpdate,
    CommentCreate,
    CommentResponse,
    PaginatedResponse,
)
from greenbook.services import article_service, comment_service

router = APIRouter(prefix="/api/v1/articles", tags=["articles"])


@router.get("", response_model=PaginatedResponse)
async def list_articles(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.get_articles(
        db, pagination.page, pagination.page_size, pagination.sort_by, pagination.sort_order
    )


@router.get("/following", response_model=PaginatedResponse)
async def list_following_articles(
    pagination: PaginationParams = Depends(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.get_following_articles(
        db, current_user.id, pagination.page, pagination.page_size
    )


@router.get("/{article_id}", response_model=ArticleDetail)
async def get_article(
    article_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    article = await article_service.get_article(db, article_id, viewer_id=current_user.id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.post("", status_code=201, response_model=ArticleDetail)
async def create_article(
    data: ArticleCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.create_article(db, current_user.id, data)


@router.put("/{article_id}", response_model=ArticleDetail)
async def update_article(
    article_id: int,
    data: ArticleUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        article = await article_service.update_article(db, article_id, current_user.id, data)
    except article_service.NotArticleAuthor:
        raise HTTPException(status_code=403, detail="Only the author can edit this article")
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.delete("/{article_id}", status_code=204)
async def delete_article(
    article_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        deleted = await article_service.delete_article(db, article_id, current_user.id)
    except article_service.NotArticleAuthor:
        raise HTTPException(status_code=403, detail="Only the author can delete this article")
    if not deleted:
        raise HTTPException(status_code=404, detail="Article not found")


@router.post("/{article_id}/comments", status_code=201, response_model=CommentResponse)
async def add_comment(
    article_id: int,
    data: CommentCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.add_comment(db, article_id, current_user.id, data)
    if not comment:
        raise HTTPException(status_code=404, detail="Article not found")
    return comment


@router.get("/{article_id}/comments", response_model=list[CommentResponse])
async def list_comments(
    article_id: int,
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    comments = await comment_service.list_comments(
        db, article_id, pagination.offset, pagination.page_size
    )
    if comments is None:
        raise HTTPException(status_code=404, detail="Article not found")
    return comments
