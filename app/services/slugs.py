"""
Slug generation for articles.

A slug is ``<encoded-id>-<slugified-title>``.  The id prefix makes slugs
unique even for articles with identical titles, so no collision check or
retry is needed when inserting.
"""
import base64
import uuid

from slugify import slugify as _slugify


def encode_id(article_id: uuid.UUID) -> str:
    """Return the 22-character URL-safe base64 form of *article_id*."""
    return base64.urlsafe_b64encode(article_id.bytes).rstrip(b"=").decode("ascii")


def slugify(text: str) -> str:
    """
    Return a lowercase ASCII slug derived from *text*.

    Non-ASCII letters are transliterated (``"Café"`` becomes ``"cafe"``) and
    every run of other characters collapses to a single hyphen.
    """
    return _slugify(text)


def generate_slug(article_id: uuid.UUID, title: str) -> str:
    return f"{encode_id(article_id)}-{slugify(title)}"
