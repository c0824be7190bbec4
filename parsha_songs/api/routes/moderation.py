import logging

from fastapi import APIRouter, Depends, HTTPException, status

from parsha_songs.core.security import require_moderator
from parsha_songs.schemas.links import LinkOut, SongOut, SongRelinkRequest
from parsha_songs.schemas.stats import NotifyTestOut
from parsha_songs.services.links import LinkLifecycleManager, LinkValidationError, get_link_manager
from parsha_songs.services.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
    sample_notification,
)
from parsha_songs.services.repository import RepositoryError

router = APIRouter(dependencies=[Depends(require_moderator)])
logger = logging.getLogger(__name__)


class ModeratedLinkOut(LinkOut):
    approval_token: str | None = None


@router.get("/pending", response_model=list[ModeratedLinkOut])
async def list_pending(manager: LinkLifecycleManager = Depends(get_link_manager)) -> list[ModeratedLinkOut]:
    try:
        rows = await manager.list_pending()
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ModeratedLinkOut(**row) for row in rows]


@router.post("/links/{link_id}/approve", response_model=LinkOut)
async def approve_link(link_id: int, manager: LinkLifecycleManager = Depends(get_link_manager)) -> LinkOut:
    try:
        row = await manager.approve(link_id)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="link not found")
    return LinkOut(**row)


@router.post("/links/{link_id}/reject", response_model=LinkOut)
async def reject_link(link_id: int, manager: LinkLifecycleManager = Depends(get_link_manager)) -> LinkOut:
    try:
        row = await manager.reject(link_id)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="link not found")
    return LinkOut(**row)


@router.delete("/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(link_id: int, manager: LinkLifecycleManager = Depends(get_link_manager)) -> None:
    try:
        deleted = await manager.delete_link(link_id)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="link not found")


@router.delete("/songs/{song_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_song(song_id: str, manager: LinkLifecycleManager = Depends(get_link_manager)) -> None:
    try:
        deleted = await manager.delete_song(song_id)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="song not found")


@router.patch("/songs/{song_id}", response_model=SongOut)
async def relink_song(
    song_id: str,
    payload: SongRelinkRequest,
    manager: LinkLifecycleManager = Depends(get_link_manager),
) -> SongOut:
    try:
        row = await manager.relink_song(song_id, payload.external_url)
    except LinkValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.code) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="song not found")
    return SongOut(**row)


@router.post("/test-notify", response_model=NotifyTestOut)
async def test_notify(
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> NotifyTestOut:
    channel = await dispatcher.notify(sample_notification())
    logger.info("test notification delivered channel=%s", channel)
    return NotifyTestOut(ok=True, channel=channel)
