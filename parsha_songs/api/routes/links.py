from fastapi import APIRouter, Depends, HTTPException, Query, status

from parsha_songs.core.security import get_moderator_flag
from parsha_songs.schemas.links import LinkCreatedOut, LinkCreateRequest, LinkOut, TargetKind
from parsha_songs.services.links import LinkLifecycleManager, LinkSubmission, LinkValidationError, get_link_manager
from parsha_songs.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("", response_model=list[LinkOut])
async def list_links(
    parasha_id: str = Query(min_length=1, max_length=50),
    target_kind: TargetKind | None = Query(default=None),
    repository=Depends(get_repository),
) -> list[LinkOut]:
    try:
        rows = await repository.get_links_by_parasha(parasha_id, target_kind)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [LinkOut(**row) for row in rows]


@router.get("/tanach/{book_id}/{chapter}", response_model=list[LinkOut])
async def list_tanach_links(
    book_id: str,
    chapter: int,
    repository=Depends(get_repository),
) -> list[LinkOut]:
    try:
        rows = await repository.get_links_by_tanach(book_id, chapter)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [LinkOut(**row) for row in rows]


@router.post("", response_model=LinkCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_link(
    payload: LinkCreateRequest,
    is_moderator: bool = Depends(get_moderator_flag),
    manager: LinkLifecycleManager = Depends(get_link_manager),
) -> LinkCreatedOut:
    submission = LinkSubmission(
        target_kind=payload.target_kind,
        song_title=payload.song.title,
        song_url=payload.song.external_url,
        parasha_id=payload.parasha_id,
        target_id=payload.target_id,
        book_id=payload.book_id,
        chapter=payload.chapter,
        verse_ref=payload.verse_ref,
        added_by=payload.added_by,
    )
    try:
        created = await manager.submit_link(submission, is_moderator=is_moderator)
    except LinkValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.code) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return LinkCreatedOut(**created)


@router.get("/approve", response_model=LinkOut)
async def approve_by_token(
    token: str = Query(min_length=1, max_length=128),
    manager: LinkLifecycleManager = Depends(get_link_manager),
) -> LinkOut:
    try:
        row = await manager.redeem_token(token)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval token not found")
    return LinkOut(**row)
