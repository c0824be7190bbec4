from fastapi import APIRouter, Depends

from parsha_songs.schemas.reference import ParashaOut
from parsha_songs.services.reference import ReferenceCatalog, get_reference_catalog

router = APIRouter()


@router.get("", response_model=list[ParashaOut])
async def list_parshiot(catalog: ReferenceCatalog = Depends(get_reference_catalog)) -> list[ParashaOut]:
    return [ParashaOut.model_validate(parasha, from_attributes=True) for parasha in catalog.list_parshiot()]
