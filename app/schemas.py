import uuid
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


# --- User ---

class UserBase(BaseModel):
    username: str = Field(max_length=100)
    email: str = Field(max_length=255)
    bio: str | None = None
    image: str | None = Field(None, max_length=500)


class UserCreate(UserBase):
    pass


class UserResponse(UserBase):
    id: uuid.UUID
    model_config = ConfigDict(from_attributes=True)


# --- Profile (author embedded in an article projection) ---

class ProfileResponse(BaseModel):
    username: str
    bio: str | None = None
    image: str | None = None
    following: bool = False


# --- Article ---

TagName = Annotated[str, Field(max_length=100)]


class ArticleCreate(BaseModel):
    title: str = Field(max_length=300)
    description: str
    body: str
    tag_list: list[TagName] = []


class ArticleUpdate(BaseModel):
    """Partial update; fields left unset are not touched."""

    title: str | None = Field(None, max_length=300)
    description: str | None = None
    body: str | None = None
    tag_list: list[TagName] | None = None


class ArticleResponse(BaseModel):
    slug: str
    title: str
    description: str
    body: str
    tag_list: list[str] = []
    created_at: str
    updated_at: str
    favorited: bool = False
    favorites_count: int = Field(0, ge=0)
    author: ProfileResponse


# --- Pagination ---

class ArticleListResponse(BaseModel):
    items: list[ArticleResponse]
    total: int
    page: int
    page_size: int
    pages: int


# --- Tags ---

class TagListResponse(BaseModel):
    tags: list[str]


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_articles: int
    total_users: int
    total_tags: int
    total_favorites: int
    avg_favorites_per_article: float
    cache_info: dict = {}
