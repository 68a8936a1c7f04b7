"""
User service — the small slice of the user registry the article core needs.

Profiles are owned upstream; this module only resolves viewer and author
identities and offers a local ``create_user`` for development and tests.
"""
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ConflictError, NotFoundError, guard_storage
from app.models import User
from app.schemas import UserCreate


@guard_storage("get_user")
async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    """Return the User with *user_id*, or None."""
    return await db.get(User, user_id)


@guard_storage("get_user_by_username")
async def get_user_by_username(db: AsyncSession, username: str) -> User:
    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"user {username!r} not found")
    return user


@guard_storage("create_user")
async def create_user(db: AsyncSession, data: UserCreate) -> User:
    """
    Create a new user.

    Username and email uniqueness is enforced by the schema; a violation
    is reported as ``ConflictError``.
    """
    user = User(
        username=data.username,
        email=data.email,
        bio=data.bio,
        image=data.image,
    )
    try:
        async with db.begin_nested():
            db.add(user)
    except IntegrityError as exc:
        raise ConflictError("a user with this username or email already exists") from exc
    return user
