"""
Article service — lifecycle of the Article aggregate and assembly of its
viewer-relative projection.

Design notes
------------
- Articles are addressed by slug.  A slug embeds the article's own id
  (see ``slugs.generate_slug``), so creation never has to probe for
  collisions and a title change keeps the slug unique.
- Only the author may update or delete an article.  The ownership check
  happens before any statement that writes, so a refused request leaves
  every row untouched.
- Multi-statement writes (tag replacement, the delete cascade, the
  favorite insert) each run inside a SAVEPOINT so a failure half-way
  leaves no partial state behind.
- Projections are assembled from three sources: the article/author row,
  the tag service and the annotation service.  List views resolve tags
  and annotations for the whole page in a constant number of queries.
- Service functions flush but do not commit; the transaction boundary is
  owned by ``Database.session`` via the ``get_db`` dependency.
"""
import logging
import math
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import ConflictError, ForbiddenError, NotFoundError, guard_storage
from app.models import Article, ArticleTag, FavoriteArticle, Follow, User, utcnow
from app.schemas import (
    ArticleCreate,
    ArticleListResponse,
    ArticleResponse,
    ArticleUpdate,
    ProfileResponse,
)
from app.services import annotation_service, tag_service
from app.services.slugs import generate_slug

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def format_timestamp(value: datetime) -> str:
    """
    Render *value* as UTC ISO-8601 with millisecond precision, e.g.
    ``2024-01-31T09:15:02.123Z``.  Naive datetimes are taken to be UTC.

    Callers depend on this exact format; do not change it.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def _project(
    article: Article,
    author: User,
    tags: list[str],
    *,
    favorited: bool,
    favorites_count: int,
    following: bool,
) -> ArticleResponse:
    return ArticleResponse(
        slug=article.slug,
        title=article.title,
        description=article.description,
        body=article.body,
        tag_list=tags,
        created_at=format_timestamp(article.created_at),
        updated_at=format_timestamp(article.updated_at),
        favorited=favorited,
        favorites_count=favorites_count,
        author=ProfileResponse(
            username=author.username,
            bio=author.bio,
            image=author.image,
            following=following,
        ),
    )


async def _project_page(
    db: AsyncSession, rows: list[tuple[Article, User]], viewer: User | None
) -> list[ArticleResponse]:
    """Build projections for a page of (article, author) rows in bulk."""
    viewer_id = viewer.id if viewer else None
    article_ids = [article.id for article, _ in rows]
    author_ids = list({author.id for _, author in rows})

    tags = await tag_service.select_tags_for_articles(db, article_ids)
    counts = await annotation_service.favorites_counts(db, article_ids)
    favorited = await annotation_service.favorited_ids(db, article_ids, viewer_id)
    followed = await annotation_service.followed_author_ids(db, author_ids, viewer_id)

    return [
        _project(
            article,
            author,
            tags.get(article.id, []),
            favorited=article.id in favorited,
            favorites_count=counts.get(article.id, 0),
            following=author.id in followed,
        )
        for article, author in rows
    ]


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def _get_article_with_author(db: AsyncSession, slug: str) -> tuple[Article, User]:
    q = (
        select(Article, User)
        .join(User, Article.author_id == User.id)
        .where(Article.slug == slug)
    )
    row = (await db.execute(q)).one_or_none()
    if row is None:
        raise NotFoundError(f"article {slug!r} not found")
    return row[0], row[1]


async def _get_owned_article(db: AsyncSession, slug: str, viewer: User) -> Article:
    result = await db.execute(select(Article).where(Article.slug == slug))
    article = result.scalar_one_or_none()
    if article is None:
        raise NotFoundError(f"article {slug!r} not found")
    if article.author_id != viewer.id:
        raise ForbiddenError("user is not the author of article in question")
    return article


async def _resolve_projection(
    db: AsyncSession, article: Article, author: User, viewer: User | None
) -> ArticleResponse:
    viewer_id = viewer.id if viewer else None
    is_favorited, following = await annotation_service.favorited_and_following(
        db, article.id, author.id, viewer_id
    )
    return _project(
        article,
        author,
        await tag_service.select_tags(db, article.id),
        favorited=is_favorited,
        favorites_count=await annotation_service.favorites_count(db, article.id),
        following=following,
    )


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

@guard_storage("create_article")
async def create_article(db: AsyncSession, author: User, data: ArticleCreate) -> ArticleResponse:
    """
    Insert a new article owned by *author* and attach its tags.

    The author is viewing their own brand-new article, so the projection
    is not favorited, has no favorites and does not follow its author.
    """
    article_id = uuid.uuid4()
    article = Article(
        id=article_id,
        slug=generate_slug(article_id, data.title),
        title=data.title,
        description=data.description,
        body=data.body,
        author_id=author.id,
    )
    db.add(article)
    await db.flush()

    tags = await tag_service.replace_tags(db, article.id, data.tag_list)
    logger.info("Article %s created by %s", article.slug, author.username)

    return _project(
        article,
        author,
        [tag.tag_name for tag in tags],
        favorited=False,
        favorites_count=0,
        following=False,
    )


@guard_storage("get_article")
async def get_article(
    db: AsyncSession, slug: str, viewer: User | None = None
) -> ArticleResponse:
    """Return the projection of the article at *slug* as seen by *viewer*."""
    article, author = await _get_article_with_author(db, slug)
    return await _resolve_projection(db, article, author, viewer)


@guard_storage("update_article")
async def update_article(
    db: AsyncSession, slug: str, viewer: User, data: ArticleUpdate
) -> ArticleResponse:
    """
    Apply the fields present in *data* to the article at *slug*.

    A new title regenerates the slug from the article's existing id.  A
    ``tag_list`` replaces the whole tag set; without one the current tags
    are kept.
    """
    article = await _get_owned_article(db, slug, viewer)

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    tag_list: list[str] | None = changes.pop("tag_list", None)

    for field, value in changes.items():
        setattr(article, field, value)
    if "title" in changes:
        article.slug = generate_slug(article.id, changes["title"])
    article.updated_at = utcnow()
    await db.flush()

    if tag_list is not None:
        tags = [tag.tag_name for tag in await tag_service.replace_tags(db, article.id, tag_list)]
    else:
        tags = await tag_service.select_tags(db, article.id)

    logger.info("Article %s updated (%s)", article.slug, ", ".join(sorted(changes)) or "tags")

    # The viewer is the author here, so "following" is always False.
    return _project(
        article,
        viewer,
        tags,
        favorited=await annotation_service.favorited(db, article.id, viewer.id),
        favorites_count=await annotation_service.favorites_count(db, article.id),
        following=False,
    )


@guard_storage("delete_article")
async def delete_article(db: AsyncSession, slug: str, viewer: User) -> None:
    """
    Delete the article at *slug* together with its tags and favorites.

    Dependents go first (tags, then favorites, then the article row) and
    the three statements share one SAVEPOINT.
    """
    article = await _get_owned_article(db, slug, viewer)

    async with db.begin_nested():
        await tag_service.delete_tags(db, article.id)
        await db.execute(
            delete(FavoriteArticle).where(FavoriteArticle.article_id == article.id)
        )
        await db.execute(delete(Article).where(Article.id == article.id))

    logger.info("Article %s deleted by %s", slug, viewer.username)


@guard_storage("favorite_article")
async def favorite_article(db: AsyncSession, slug: str, viewer: User) -> ArticleResponse:
    """
    Record that *viewer* favorited the article at *slug*.

    Favoriting twice is a ``ConflictError``, not a silent success.
    """
    article, author = await _get_article_with_author(db, slug)

    try:
        async with db.begin_nested():
            await db.execute(
                insert(FavoriteArticle).values(user_id=viewer.id, article_id=article.id)
            )
    except IntegrityError as exc:
        raise ConflictError(f"article {slug!r} is already favorited") from exc

    logger.info("Article %s favorited by %s", slug, viewer.username)
    return await _resolve_projection(db, article, author, viewer)


@guard_storage("unfavorite_article")
async def unfavorite_article(db: AsyncSession, slug: str, viewer: User) -> ArticleResponse:
    """Remove *viewer*'s favorite from the article at *slug*, if there is one."""
    article, author = await _get_article_with_author(db, slug)

    await db.execute(
        delete(FavoriteArticle).where(
            FavoriteArticle.user_id == viewer.id,
            FavoriteArticle.article_id == article.id,
        )
    )

    logger.info("Article %s unfavorited by %s", slug, viewer.username)
    return await _resolve_projection(db, article, author, viewer)


# ---------------------------------------------------------------------------
# List views
# ---------------------------------------------------------------------------

async def _paginate(
    db: AsyncSession,
    conditions: list,
    viewer: User | None,
    page: int,
    page_size: int,
) -> ArticleListResponse:
    """
    Two statements for the page itself (COUNT, then SELECT with the author
    JOIN) plus the constant number of bulk annotation queries.
    """
    page_size = min(page_size, settings.MAX_PAGE_SIZE)

    count_q = select(func.count()).select_from(Article).where(*conditions)
    total: int = (await db.execute(count_q)).scalar_one()

    articles_q = (
        select(Article, User)
        .join(User, Article.author_id == User.id)
        .where(*conditions)
        .order_by(Article.created_at.desc(), Article.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    rows = [(article, author) for article, author in (await db.execute(articles_q)).all()]

    return ArticleListResponse(
        items=await _project_page(db, rows, viewer),
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@guard_storage("list_articles")
async def list_articles(
    db: AsyncSession,
    viewer: User | None = None,
    *,
    tag: str | None = None,
    author: str | None = None,
    favorited_by: str | None = None,
    page: int = 1,
    page_size: int = settings.DEFAULT_PAGE_SIZE,
) -> ArticleListResponse:
    """
    Return a page of articles, newest first.

    *tag* matches a tag name exactly, *author* and *favorited_by* are
    usernames.  Filters combine with AND; an unknown username simply
    yields an empty page.
    """
    conditions = []
    if tag is not None:
        conditions.append(
            Article.id.in_(select(ArticleTag.article_id).where(ArticleTag.tag_name == tag))
        )
    if author is not None:
        conditions.append(
            Article.author_id.in_(select(User.id).where(User.username == author))
        )
    if favorited_by is not None:
        conditions.append(
            Article.id.in_(
                select(FavoriteArticle.article_id)
                .join(User, FavoriteArticle.user_id == User.id)
                .where(User.username == favorited_by)
            )
        )
    return await _paginate(db, conditions, viewer, page, page_size)


@guard_storage("feed_articles")
async def feed_articles(
    db: AsyncSession,
    viewer: User,
    *,
    page: int = 1,
    page_size: int = settings.DEFAULT_PAGE_SIZE,
) -> ArticleListResponse:
    """Return a page of articles written by authors *viewer* follows."""
    conditions = [
        Article.author_id.in_(
            select(Follow.followed_id).where(Follow.follower_id == viewer.id)
        )
    ]
    return await _paginate(db, conditions, viewer, page, page_size)
