from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import PaginationParams, get_viewer, require_viewer
from app.models import User
from app.schemas import ArticleCreate, ArticleListResponse, ArticleResponse, ArticleUpdate
from app.services import article_service

router = APIRouter(prefix="/api/v1/articles", tags=["articles"])


@router.get("", response_model=ArticleListResponse)
async def list_articles(
    tag: str | None = Query(None),
    author: str | None = Query(None),
    favorited: str | None = Query(None, description="Username whose favorites to list."),
    pagination: PaginationParams = Depends(),
    viewer: User | None = Depends(get_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_articles(
        db,
        viewer,
        tag=tag,
        author=author,
        favorited_by=favorited,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/feed", response_model=ArticleListResponse)
async def feed_articles(
    pagination: PaginationParams = Depends(),
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.feed_articles(
        db, viewer, page=pagination.page, page_size=pagination.page_size
    )


@router.post("", status_code=201, response_model=ArticleResponse)
async def create_article(
    data: ArticleCreate,
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.create_article(db, viewer, data)


@router.get("/{slug}", response_model=ArticleResponse)
async def get_article(
    slug: str,
    viewer: User | None = Depends(get_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.get_article(db, slug, viewer)


@router.put("/{slug}", response_model=ArticleResponse)
async def update_article(
    slug: str,
    data: ArticleUpdate,
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.update_article(db, slug, viewer, data)


@router.delete("/{slug}", status_code=204)
async def delete_article(
    slug: str,
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    await article_service.delete_article(db, slug, viewer)


@router.post("/{slug}/favorite", response_model=ArticleResponse)
async def favorite_article(
    slug: str,
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.favorite_article(db, slug, viewer)


@router.delete("/{slug}/favorite", response_model=ArticleResponse)
async def unfavorite_article(
    slug: str,
    viewer: User = Depends(require_viewer),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.unfavorite_article(db, slug, viewer)
