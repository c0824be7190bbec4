from fastapi import APIRouter, Depends, HTTPException, status

from parsha_songs.core.security import require_moderator
from parsha_songs.schemas.stats import TotalSongsOut, VisitStatsOut
from parsha_songs.services.repository import RepositoryError, get_repository
from parsha_songs.services.visits import VisitCounter

router = APIRouter()


@router.get("/total-songs", response_model=TotalSongsOut)
async def total_songs(repository=Depends(get_repository)) -> TotalSongsOut:
    try:
        total = await repository.get_total_songs()
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return TotalSongsOut(total=total)


@router.get("/visits", response_model=VisitStatsOut, dependencies=[Depends(require_moderator)])
async def visit_stats(repository=Depends(get_repository)) -> VisitStatsOut:
    try:
        stats = await VisitCounter(repository).stats()
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return VisitStatsOut(**stats)
