from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import cache
from app.database import get_db
from app.models import Article, ArticleTag, FavoriteArticle, User
from app.schemas import MetricsResponse

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])


@router.get("", response_model=MetricsResponse)
async def get_metrics(db: AsyncSession = Depends(get_db)):

    total_articles = (await db.execute(select(func.count()).select_from(Article))).scalar_one()

    total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

    total_tags = (
        await db.execute(select(func.count(func.distinct(ArticleTag.tag_name))))
    ).scalar_one()

    total_favorites = (
        await db.execute(select(func.count()).select_from(FavoriteArticle))
    ).scalar_one()

    avg_favorites = total_favorites / total_articles if total_articles > 0 else 0

    return MetricsResponse(
        total_articles=total_articles,
        total_users=total_users,
        total_tags=total_tags,
        total_favorites=total_favorites,
        avg_favorites_per_article=round(avg_favorites, 2),
        cache_info=cache.stats,
    )
