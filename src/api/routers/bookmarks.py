"""Bookmark endpoints: create, delete, snapshot, and realtime changes."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    get_async_session,
    get_current_user,
    get_current_user_for_stream,
    get_feed,
    get_settings,
)
from api.helpers import change_event_stream
from core.config import Settings
from models.user import User
from schemas.bookmark import (
    BookmarkCreate,
    BookmarkListResponse,
    BookmarkResponse,
    DeleteBookmarkResponse,
)
from services import bookmark_service
from services.change_feed import ChangeFeed

router = APIRouter(prefix="/api/bookmarks", tags=["bookmarks"])


@router.post("", response_model=BookmarkResponse, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkResponse:
    """
    Create a bookmark owned by the current user.

    The url gets an https:// scheme when it has none; url and title are trimmed
    and must not be empty.
    """
    bookmark = await bookmark_service.create_bookmark(db, current_user.id, data)
    return BookmarkResponse.model_validate(bookmark)


@router.delete("", response_model=DeleteBookmarkResponse)
async def delete_bookmark(
    bookmark_id: str | None = Query(default=None, alias="id", description="Bookmark ID"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> DeleteBookmarkResponse:
    """
    Delete one of the current user's bookmarks.

    Succeeds even when nothing matched: a bookmark owned by another user is
    never visible to this request, so deleting it is a no-op.
    """
    if not bookmark_id:
        raise HTTPException(status_code=400, detail="ID is required")
    try:
        parsed_id = UUID(bookmark_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid bookmark ID")

    await bookmark_service.delete_bookmark(db, current_user.id, parsed_id)
    return DeleteBookmarkResponse(success=True)


@router.get("", response_model=BookmarkListResponse)
async def list_bookmarks(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkListResponse:
    """Get the current user's bookmarks, newest first (page-load snapshot)."""
    bookmarks, total = await bookmark_service.list_bookmarks(db, current_user.id)
    return BookmarkListResponse(
        items=[BookmarkResponse.model_validate(b) for b in bookmarks],
        total=total,
    )


@router.get("/changes")
async def stream_bookmark_changes(
    request: Request,
    current_user: User = Depends(get_current_user_for_stream),
    feed: ChangeFeed = Depends(get_feed),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """
    Stream the current user's bookmark inserts and deletes as server-sent events.

    Open the stream after loading the snapshot; the first message is a
    `subscribed` event, after which every committed change is delivered.
    No database session is held while the stream is open.
    """
    return StreamingResponse(
        change_event_stream(
            feed,
            current_user.id,
            request.is_disconnected,
            settings.realtime_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
