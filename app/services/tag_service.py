"""
Tag service — the many-to-many association between articles and their
free-text tag names.

Tags are stored as (article_id, tag_name) rows with a composite primary
key, so adding a tag an article already carries is a no-op rather than
an error.  Tag reads go through the Redis cache.  A mutation only marks
the article on the session; the cached keys are dropped once the
transaction commits (``Database.session``), and until then reads in the
writing session bypass the cache.
"""
import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import ALL_TAGS_KEY, article_tags_key, cache, mark_tags_dirty, tags_dirty
from app.config import settings
from app.errors import guard_storage
from app.models import ArticleTag

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_ignore(db: AsyncSession, article_id: uuid.UUID, tag_name: str):
    """Build an ``INSERT ... ON CONFLICT DO NOTHING`` for the session's dialect."""
    insert = _UPSERT_DIALECTS[db.bind.dialect.name]
    return (
        insert(ArticleTag)
        .values(article_id=article_id, tag_name=tag_name)
        .on_conflict_do_nothing(index_elements=["article_id", "tag_name"])
    )


@guard_storage("add_tag")
async def add_tag(db: AsyncSession, article_id: uuid.UUID, tag_name: str) -> ArticleTag:
    """
    Attach *tag_name* to the article, returning the (possibly pre-existing)
    row.  Calling this twice with the same pair leaves exactly one row.
    """
    await db.execute(_insert_ignore(db, article_id, tag_name))
    mark_tags_dirty(db, article_id)
    result = await db.execute(
        select(ArticleTag).where(
            ArticleTag.article_id == article_id,
            ArticleTag.tag_name == tag_name,
        )
    )
    return result.scalar_one()


@guard_storage("delete_tags")
async def delete_tags(db: AsyncSession, article_id: uuid.UUID) -> None:
    await db.execute(delete(ArticleTag).where(ArticleTag.article_id == article_id))
    mark_tags_dirty(db, article_id)


@guard_storage("replace_tags")
async def replace_tags(
    db: AsyncSession, article_id: uuid.UUID, tag_names: Iterable[str]
) -> list[ArticleTag]:
    """
    Make the article's tag set exactly *tag_names* (duplicates collapse).

    This is a full replacement, not a merge: callers wanting to keep
    existing tags must pass them again.  The delete and the inserts share
    one SAVEPOINT, so a failure part-way leaves the previous set intact.
    """
    unique_names = list(dict.fromkeys(tag_names))
    async with db.begin_nested():
        await delete_tags(db, article_id)
        tags = [await add_tag(db, article_id, name) for name in unique_names]
    logger.debug("Replaced tags on article %s with %r", article_id, unique_names)
    return tags


@guard_storage("select_tags")
async def select_tags(db: AsyncSession, article_id: uuid.UUID) -> list[str]:
    """Return the article's tag names, ordered by name."""
    cache_key = article_tags_key(article_id)
    use_cache = not tags_dirty(db, article_id)
    if use_cache:
        cached = await cache.get(cache_key)
        if cached is not None:
            return cached

    result = await db.execute(
        select(ArticleTag.tag_name)
        .where(ArticleTag.article_id == article_id)
        .order_by(ArticleTag.tag_name)
    )
    tags = list(result.scalars().all())
    if use_cache:
        await cache.set(cache_key, tags, ttl=settings.CACHE_TTL_TAGS)
    return tags


@guard_storage("select_tags_for_articles")
async def select_tags_for_articles(
    db: AsyncSession, article_ids: list[uuid.UUID]
) -> dict[uuid.UUID, list[str]]:
    """Return ``{article_id: [tag_name, ...]}`` for a page of articles in one query."""
    tags: dict[uuid.UUID, list[str]] = defaultdict(list)
    if not article_ids:
        return tags
    result = await db.execute(
        select(ArticleTag.article_id, ArticleTag.tag_name)
        .where(ArticleTag.article_id.in_(article_ids))
        .order_by(ArticleTag.article_id, ArticleTag.tag_name)
    )
    for article_id, tag_name in result.all():
        tags[article_id].append(tag_name)
    return tags


@guard_storage("get_all_tags")
async def get_all_tags(db: AsyncSession) -> list[str]:
    """Return every distinct tag name currently attached to an article."""
    use_cache = not tags_dirty(db)
    if use_cache:
        cached = await cache.get(ALL_TAGS_KEY)
        if cached is not None:
            return cached

    result = await db.execute(
        select(ArticleTag.tag_name).distinct().order_by(ArticleTag.tag_name)
    )
    tags = list(result.scalars().all())
    if use_cache:
        await cache.set(ALL_TAGS_KEY, tags, ttl=settings.CACHE_TTL_TAGS)
    return tags
