"""
Article lifecycle tests — exercises ``article_service`` directly with a
database session: create / read / update / delete, favorites, ownership
checks and the list views.
"""
import re
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, ErrorKind, ForbiddenError, NotFoundError, StorageError
from app.models import Article, ArticleTag, FavoriteArticle, Follow, User
from app.schemas import ArticleCreate, ArticleUpdate
from app.services import annotation_service, article_service, tag_service
from app.services.article_service import format_timestamp

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _create_user(db: AsyncSession, username: str = "author", **fields) -> User:
    user = User(username=username, email=f"{username}@example.com", **fields)
    db.add(user)
    await db.flush()
    return user


async def _create_article(db: AsyncSession, author: User, title: str = "Hello World", **fields):
    data = ArticleCreate(
        title=title,
        description=fields.pop("description", "An article"),
        body=fields.pop("body", "Body text"),
        tag_list=fields.pop("tag_list", []),
    )
    return await article_service.create_article(db, author, data)


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_article_projection(db_session: AsyncSession):
    author = await _create_user(db_session, bio="Writes things", image="https://img/a.png")
    article = await _create_article(db_session, author, tag_list=["python", "sql"])

    assert re.fullmatch(r"[A-Za-z0-9_-]{22}-hello-world", article.slug)
    assert article.title == "Hello World"
    assert article.description == "An article"
    assert article.body == "Body text"
    assert article.tag_list == ["python", "sql"]
    assert article.favorited is False
    assert article.favorites_count == 0
    assert article.author.username == "author"
    assert article.author.bio == "Writes things"
    assert article.author.image == "https://img/a.png"
    assert article.author.following is False
    assert TIMESTAMP_RE.match(article.created_at)
    assert TIMESTAMP_RE.match(article.updated_at)


@pytest.mark.asyncio
async def test_create_article_deduplicates_tags(db_session: AsyncSession):
    author = await _create_user(db_session)
    article = await _create_article(db_session, author, tag_list=["a", "a", "b"])
    assert article.tag_list == ["a", "b"]
    assert await _count(db_session, ArticleTag) == 2


@pytest.mark.asyncio
async def test_identical_titles_get_distinct_slugs(db_session: AsyncSession):
    author = await _create_user(db_session)
    first = await _create_article(db_session, author, "Same Title")
    second = await _create_article(db_session, author, "Same Title")
    assert first.slug != second.slug
    assert first.slug.endswith("-same-title")
    assert second.slug.endswith("-same-title")


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_article_anonymous(db_session: AsyncSession):
    author = await _create_user(db_session)
    created = await _create_article(db_session, author, tag_list=["z", "a"])

    article = await article_service.get_article(db_session, created.slug)

    assert article.slug == created.slug
    assert article.favorited is False
    assert article.author.following is False
    assert sorted(article.tag_list) == ["a", "z"]
    assert article.created_at == created.created_at


@pytest.mark.asyncio
async def test_get_article_as_follower_who_favorited(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author)
    db_session.add(Follow(follower_id=reader.id, followed_id=author.id))
    await db_session.flush()

    await article_service.favorite_article(db_session, created.slug, reader)
    article = await article_service.get_article(db_session, created.slug, reader)

    assert article.favorited is True
    assert article.favorites_count == 1
    assert article.author.following is True


@pytest.mark.asyncio
async def test_get_article_not_found(db_session: AsyncSession):
    with pytest.raises(NotFoundError) as excinfo:
        await article_service.get_article(db_session, "missing-slug")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_title_regenerates_slug_with_same_prefix(db_session: AsyncSession):
    author = await _create_user(db_session)
    created = await _create_article(db_session, author, "Before Update")
    prefix = created.slug.rsplit("-before-update", 1)[0]

    updated = await article_service.update_article(
        db_session, created.slug, author, ArticleUpdate(title="After Update")
    )

    assert updated.slug == f"{prefix}-after-update"
    assert updated.title == "After Update"
    assert updated.description == created.description
    assert updated.body == created.body
    with pytest.raises(NotFoundError):
        await article_service.get_article(db_session, created.slug)
    assert (await article_service.get_article(db_session, updated.slug)).title == "After Update"


@pytest.mark.asyncio
async def test_update_is_partial(db_session: AsyncSession):
    author = await _create_user(db_session)
    created = await _create_article(db_session, author, tag_list=["keep"])

    updated = await article_service.update_article(
        db_session, created.slug, author, ArticleUpdate(body="New body")
    )

    assert updated.slug == created.slug
    assert updated.title == created.title
    assert updated.description == created.description
    assert updated.body == "New body"
    assert updated.tag_list == ["keep"]


@pytest.mark.asyncio
async def test_update_replaces_tags(db_session: AsyncSession):
    author = await _create_user(db_session)
    created = await _create_article(db_session, author, tag_list=["old"])

    updated = await article_service.update_article(
        db_session, created.slug, author, ArticleUpdate(tag_list=["new-a", "new-b"])
    )

    assert set(updated.tag_list) == {"new-a", "new-b"}
    assert set(await tag_service.get_all_tags(db_session)) == {"new-a", "new-b"}


@pytest.mark.asyncio
async def test_update_reports_favorites(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author)
    await article_service.favorite_article(db_session, created.slug, reader)
    await article_service.favorite_article(db_session, created.slug, author)

    updated = await article_service.update_article(
        db_session, created.slug, author, ArticleUpdate(description="Changed")
    )

    assert updated.favorites_count == 2
    assert updated.favorited is True
    assert updated.author.following is False


@pytest.mark.asyncio
async def test_update_by_non_author_is_forbidden(db_session: AsyncSession):
    author = await _create_user(db_session)
    intruder = await _create_user(db_session, "intruder")
    created = await _create_article(db_session, author, tag_list=["mine"])

    with pytest.raises(ForbiddenError) as excinfo:
        await article_service.update_article(
            db_session, created.slug, intruder, ArticleUpdate(title="Hijacked", tag_list=[])
        )
    assert excinfo.value.kind is ErrorKind.FORBIDDEN

    article = await article_service.get_article(db_session, created.slug)
    assert article.title == "Hello World"
    assert article.tag_list == ["mine"]


@pytest.mark.asyncio
async def test_update_missing_article(db_session: AsyncSession):
    author = await _create_user(db_session)
    with pytest.raises(NotFoundError):
        await article_service.update_article(
            db_session, "missing-slug", author, ArticleUpdate(title="Ghost")
        )


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_cascades_to_tags_and_favorites(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author, tag_list=["a", "b"])
    await article_service.favorite_article(db_session, created.slug, reader)
    article_id = (
        await db_session.execute(select(Article.id).where(Article.slug == created.slug))
    ).scalar_one()

    await article_service.delete_article(db_session, created.slug, author)

    with pytest.raises(NotFoundError):
        await article_service.get_article(db_session, created.slug)
    assert await tag_service.select_tags(db_session, article_id) == []
    assert await annotation_service.favorites_count(db_session, article_id) == 0
    assert await _count(db_session, ArticleTag) == 0
    assert await _count(db_session, FavoriteArticle) == 0
    assert await _count(db_session, Article) == 0


@pytest.mark.asyncio
async def test_delete_by_non_author_is_forbidden(db_session: AsyncSession):
    author = await _create_user(db_session)
    intruder = await _create_user(db_session, "intruder")
    created = await _create_article(db_session, author, tag_list=["a"])
    await article_service.favorite_article(db_session, created.slug, intruder)

    with pytest.raises(ForbiddenError):
        await article_service.delete_article(db_session, created.slug, intruder)

    assert await _count(db_session, Article) == 1
    assert await _count(db_session, ArticleTag) == 1
    assert await _count(db_session, FavoriteArticle) == 1


@pytest.mark.asyncio
async def test_delete_missing_article(db_session: AsyncSession):
    author = await _create_user(db_session)
    with pytest.raises(NotFoundError):
        await article_service.delete_article(db_session, "missing-slug", author)


@pytest.mark.asyncio
async def test_failed_delete_leaves_article_tags_and_favorites(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author, tag_list=["a", "b"])
    await article_service.favorite_article(db_session, created.slug, reader)

    def fail_article_delete(orm_execute_state):
        statement = orm_execute_state.statement
        if orm_execute_state.is_delete and statement.table.name == "articles":
            raise OperationalError("DELETE FROM articles", {}, Exception("disk I/O error"))

    event.listen(db_session.sync_session, "do_orm_execute", fail_article_delete)
    try:
        with pytest.raises(StorageError) as excinfo:
            await article_service.delete_article(db_session, created.slug, author)
    finally:
        event.remove(db_session.sync_session, "do_orm_execute", fail_article_delete)

    assert excinfo.value.kind is ErrorKind.STORAGE_FAILURE
    assert excinfo.value.operation == "delete_article"
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert await _count(db_session, Article) == 1
    assert await _count(db_session, ArticleTag) == 2
    assert await _count(db_session, FavoriteArticle) == 1
    article = await article_service.get_article(db_session, created.slug, reader)
    assert article.tag_list == ["a", "b"]
    assert article.favorited is True
    assert article.favorites_count == 1


# ---------------------------------------------------------------------------
# Favorite / unfavorite
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_favorite_then_unfavorite(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author)

    favorited = await article_service.favorite_article(db_session, created.slug, reader)
    assert favorited.favorited is True
    assert favorited.favorites_count == 1

    unfavorited = await article_service.unfavorite_article(db_session, created.slug, reader)
    assert unfavorited.favorited is False
    assert unfavorited.favorites_count == 0


@pytest.mark.asyncio
async def test_favorite_twice_is_conflict(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author)

    await article_service.favorite_article(db_session, created.slug, reader)
    with pytest.raises(ConflictError) as excinfo:
        await article_service.favorite_article(db_session, created.slug, reader)
    assert excinfo.value.kind is ErrorKind.CONFLICT

    # The session is still usable and the first favorite survived.
    article = await article_service.get_article(db_session, created.slug, reader)
    assert article.favorites_count == 1


@pytest.mark.asyncio
async def test_unfavorite_without_favorite_is_noop(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    created = await _create_article(db_session, author)

    article = await article_service.unfavorite_article(db_session, created.slug, reader)
    assert article.favorited is False
    assert article.favorites_count == 0


@pytest.mark.asyncio
async def test_favorite_missing_article(db_session: AsyncSession):
    reader = await _create_user(db_session, "reader")
    with pytest.raises(NotFoundError):
        await article_service.favorite_article(db_session, "missing-slug", reader)
    with pytest.raises(NotFoundError):
        await article_service.unfavorite_article(db_session, "missing-slug", reader)


# ---------------------------------------------------------------------------
# List views
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_articles_filters(db_session: AsyncSession):
    alice = await _create_user(db_session, "alice")
    bob = await _create_user(db_session, "bob")
    a1 = await _create_article(db_session, alice, "Alice One", tag_list=["python"])
    await _create_article(db_session, alice, "Alice Two", tag_list=["rust"])
    b1 = await _create_article(db_session, bob, "Bob One", tag_list=["python"])
    await article_service.favorite_article(db_session, a1.slug, bob)

    everything = await article_service.list_articles(db_session)
    assert everything.total == 3

    by_tag = await article_service.list_articles(db_session, tag="python")
    assert {a.slug for a in by_tag.items} == {a1.slug, b1.slug}

    by_author = await article_service.list_articles(db_session, author="alice")
    assert {a.title for a in by_author.items} == {"Alice One", "Alice Two"}

    combined = await article_service.list_articles(db_session, tag="python", author="bob")
    assert [a.slug for a in combined.items] == [b1.slug]

    favorites = await article_service.list_articles(db_session, favorited_by="bob")
    assert [a.slug for a in favorites.items] == [a1.slug]
    assert favorites.items[0].favorites_count == 1

    nobody = await article_service.list_articles(db_session, author="nobody")
    assert nobody.total == 0
    assert nobody.items == []
    assert nobody.pages == 0


@pytest.mark.asyncio
async def test_list_articles_pagination_and_annotations(db_session: AsyncSession):
    author = await _create_user(db_session)
    reader = await _create_user(db_session, "reader")
    db_session.add(Follow(follower_id=reader.id, followed_id=author.id))
    await db_session.flush()
    created = [await _create_article(db_session, author, f"Article {i}") for i in range(3)]
    await article_service.favorite_article(db_session, created[0].slug, reader)

    page = await article_service.list_articles(db_session, reader, page=1, page_size=2)
    assert page.total == 3
    assert page.pages == 2
    assert len(page.items) == 2

    everything = await article_service.list_articles(db_session, reader, page_size=10)
    by_slug = {a.slug: a for a in everything.items}
    assert by_slug[created[0].slug].favorited is True
    assert by_slug[created[1].slug].favorited is False
    assert all(a.author.following for a in everything.items)

    anonymous = await article_service.list_articles(db_session, None, page_size=10)
    assert not any(a.favorited or a.author.following for a in anonymous.items)


@pytest.mark.asyncio
async def test_feed_contains_only_followed_authors(db_session: AsyncSession):
    followed = await _create_user(db_session, "followed")
    stranger = await _create_user(db_session, "stranger")
    reader = await _create_user(db_session, "reader")
    db_session.add(Follow(follower_id=reader.id, followed_id=followed.id))
    await db_session.flush()
    wanted = await _create_article(db_session, followed, "Followed")
    await _create_article(db_session, stranger, "Stranger")

    feed = await article_service.feed_articles(db_session, reader)

    assert [a.slug for a in feed.items] == [wanted.slug]
    assert feed.items[0].author.following is True
    assert (await article_service.feed_articles(db_session, stranger)).total == 0


# ---------------------------------------------------------------------------
# Timestamp format
# ---------------------------------------------------------------------------

def test_format_timestamp_is_utc_millis():
    aware = datetime(2024, 1, 31, 11, 15, 2, 123456, tzinfo=timezone(timedelta(hours=2)))
    naive = datetime(2024, 1, 31, 9, 15, 2, 999999)
    assert format_timestamp(aware) == "2024-01-31T09:15:02.123Z"
    assert format_timestamp(naive) == "2024-01-31T09:15:02.999Z"
