import uuid

from fastapi import Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models import User
from app.services import user_service


class PaginationParams:
    """
    Reusable FastAPI dependency that parses pagination query parameters.

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``
        regardless of the value supplied by the caller.
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-based)."),
        page_size: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            description="Number of items returned per page (clamped to MAX_PAGE_SIZE).",
        ),
    ) -> None:
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)


async def get_viewer(
    x_viewer_id: uuid.UUID | None = Header(
        None,
        description="Id of the viewer, set by the upstream authenticator.",
    ),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """
    Resolve the already-authenticated viewer, or None for anonymous
    requests.  An id that names no user is rejected with 401.
    """
    if x_viewer_id is None:
        return None
    viewer = await user_service.get_user(db, x_viewer_id)
    if viewer is None:
        raise HTTPException(status_code=401, detail="Unknown viewer")
    return viewer


async def require_viewer(viewer: User | None = Depends(get_viewer)) -> User:
    if viewer is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return viewer
