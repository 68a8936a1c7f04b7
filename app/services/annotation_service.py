"""
Annotation service — viewer-relative social flags for article projections.

``favorited`` and ``following`` are resolved against the viewer's own row
in ``users``, LEFT JOINed to ``favorite_articles`` and ``followers``, so both
flags come from one statement and one snapshot.  Anonymous viewers
(``viewer_id is None``) short-circuit to ``False`` without touching the
database.  Nobody is ever reported as following themselves.

The ``*_ids`` / ``favorites_counts`` helpers are the list-view
counterparts: one query per page of articles instead of one per article.
"""
import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError, guard_storage
from app.models import FavoriteArticle, Follow, User


@guard_storage("favorited")
async def favorited(
    db: AsyncSession, article_id: uuid.UUID, viewer_id: uuid.UUID | None
) -> bool:
    if viewer_id is None:
        return False
    q = (
        select(User.id, FavoriteArticle.user_id)
        .select_from(User)
        .outerjoin(
            FavoriteArticle,
            and_(
                FavoriteArticle.user_id == User.id,
                FavoriteArticle.article_id == article_id,
            ),
        )
        .where(User.id == viewer_id)
    )
    row = (await db.execute(q)).one_or_none()
    if row is None:
        raise NotFoundError(f"user {viewer_id} not found")
    return row[1] is not None


@guard_storage("favorites_count")
async def favorites_count(db: AsyncSession, article_id: uuid.UUID) -> int:
    q = (
        select(func.count())
        .select_from(FavoriteArticle)
        .where(FavoriteArticle.article_id == article_id)
    )
    return (await db.execute(q)).scalar_one()


@guard_storage("favorited_and_following")
async def favorited_and_following(
    db: AsyncSession,
    article_id: uuid.UUID,
    author_id: uuid.UUID,
    viewer_id: uuid.UUID | None,
) -> tuple[bool, bool]:
    """Return ``(favorited, following)`` for *viewer_id* in a single query."""
    if viewer_id is None:
        return False, False
    q = (
        select(User.id, FavoriteArticle.user_id, Follow.follower_id)
        .select_from(User)
        .outerjoin(
            FavoriteArticle,
            and_(
                FavoriteArticle.user_id == User.id,
                FavoriteArticle.article_id == article_id,
            ),
        )
        .outerjoin(
            Follow,
            and_(
                Follow.follower_id == User.id,
                Follow.followed_id == author_id,
            ),
        )
        .where(User.id == viewer_id)
    )
    row = (await db.execute(q)).one_or_none()
    if row is None:
        raise NotFoundError(f"user {viewer_id} not found")
    _, favorite_user_id, follower_id = row
    following = follower_id is not None and viewer_id != author_id
    return favorite_user_id is not None, following


# ---------------------------------------------------------------------------
# Bulk helpers for list views
# ---------------------------------------------------------------------------

@guard_storage("favorites_counts")
async def favorites_counts(
    db: AsyncSession, article_ids: list[uuid.UUID]
) -> dict[uuid.UUID, int]:
    """Return ``{article_id: count}``; articles without favorites are absent."""
    if not article_ids:
        return {}
    q = (
        select(FavoriteArticle.article_id, func.count())
        .where(FavoriteArticle.article_id.in_(article_ids))
        .group_by(FavoriteArticle.article_id)
    )
    return {article_id: count for article_id, count in (await db.execute(q)).all()}


@guard_storage("favorited_ids")
async def favorited_ids(
    db: AsyncSession, article_ids: list[uuid.UUID], viewer_id: uuid.UUID | None
) -> set[uuid.UUID]:
    """Return the subset of *article_ids* the viewer has favorited."""
    if viewer_id is None or not article_ids:
        return set()
    q = select(FavoriteArticle.article_id).where(
        FavoriteArticle.user_id == viewer_id,
        FavoriteArticle.article_id.in_(article_ids),
    )
    return set((await db.execute(q)).scalars().all())


@guard_storage("followed_author_ids")
async def followed_author_ids(
    db: AsyncSession, author_ids: list[uuid.UUID], viewer_id: uuid.UUID | None
) -> set[uuid.UUID]:
    """Return the subset of *author_ids* the viewer follows (never the viewer)."""
    if viewer_id is None or not author_ids:
        return set()
    q = select(Follow.followed_id).where(
        Follow.follower_id == viewer_id,
        Follow.followed_id.in_(author_ids),
    )
    return set((await db.execute(q)).scalars().all()) - {viewer_id}
