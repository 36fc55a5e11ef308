"""Service layer for bookmark create, delete and snapshot operations."""
import logging
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from models.bookmark import Bookmark
from schemas.bookmark import BookmarkCreate, BookmarkResponse
from schemas.change_event import ChangeEvent
from services.change_feed import record_change
from services.exceptions import BookmarkValidationError, StoreError

logger = logging.getLogger(__name__)


def validate_bookmark_fields(data: BookmarkCreate) -> None:
    """
    Check required fields and length limits of an already normalized request.

    Raises:
        BookmarkValidationError: If url or title is empty or too long.
    """
    if not data.url or not data.title:
        raise BookmarkValidationError("URL and title are required")

    settings = get_settings()
    if len(data.title) > settings.max_title_length:
        raise BookmarkValidationError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(data.title):,} characters).",
            field="title",
        )
    if len(data.url) > settings.max_url_length:
        raise BookmarkValidationError(
            f"URL exceeds maximum length of {settings.max_url_length:,} characters "
            f"(got {len(data.url):,} characters).",
            field="url",
        )


async def _rollback_and_wrap(db: AsyncSession, error: SQLAlchemyError, action: str) -> StoreError:
    """Roll back the failed unit of work and wrap the error for the API layer."""
    logger.exception("Failed to %s", action)
    await db.rollback()
    return StoreError(str(error.orig) if getattr(error, "orig", None) else str(error))


async def create_bookmark(
    db: AsyncSession,
    user_id: UUID,
    data: BookmarkCreate,
) -> Bookmark:
    """
    Create a bookmark owned by user_id.

    The store assigns id and created_at. An INSERT change event is recorded on
    the session and published once the request's transaction commits.

    Note: Uses flush(), not commit. Session generator handles commit at request end.

    Raises:
        BookmarkValidationError: If url or title is missing or too long.
        StoreError: If the insert fails.
    """
    validate_bookmark_fields(data)

    bookmark = Bookmark(user_id=user_id, url=data.url, title=data.title)
    db.add(bookmark)
    try:
        await db.flush()
    except SQLAlchemyError as e:
        raise await _rollback_and_wrap(db, e, "create bookmark") from e

    record_change(db, ChangeEvent.inserted(BookmarkResponse.model_validate(bookmark)))
    return bookmark


async def delete_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> bool:
    """
    Delete a bookmark if it belongs to user_id.

    The id AND owner predicate is the only access check: a bookmark owned by
    someone else (or one that does not exist) matches zero rows, which is not
    an error. A DELETE change event is recorded only when a row was removed.

    Returns:
        True if a row was deleted, False if nothing matched.

    Raises:
        StoreError: If the delete fails.
    """
    try:
        result = await db.execute(
            delete(Bookmark)
            .where(Bookmark.id == bookmark_id, Bookmark.user_id == user_id)
            .execution_options(synchronize_session=False),
        )
    except SQLAlchemyError as e:
        raise await _rollback_and_wrap(db, e, "delete bookmark") from e

    if result.rowcount == 0:
        logger.debug("Delete of bookmark %s by user %s matched no rows", bookmark_id, user_id)
        return False

    record_change(db, ChangeEvent.deleted(bookmark_id, user_id))
    return True


async def list_bookmarks(db: AsyncSession, user_id: UUID) -> tuple[list[Bookmark], int]:
    """
    Get the owner's full collection, newest first.

    Returns:
        Tuple of (bookmarks, total count).

    Raises:
        StoreError: If the query fails.
    """
    try:
        result = await db.execute(
            select(Bookmark)
            .where(Bookmark.user_id == user_id)
            .order_by(Bookmark.created_at.desc(), Bookmark.id),
        )
        bookmarks = list(result.scalars().all())
    except SQLAlchemyError as e:
        raise await _rollback_and_wrap(db, e, "list bookmarks") from e
    return bookmarks, len(bookmarks)
