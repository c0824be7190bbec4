from fastapi import APIRouter

from parsha_songs.api.routes import health, links, moderation, reference, stats

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(reference.router, prefix="/parshiot", tags=["public"])
api_router.include_router(links.router, prefix="/links", tags=["public"])
api_router.include_router(stats.router, prefix="/stats", tags=["public"])
api_router.include_router(moderation.router, prefix="/moderation", tags=["moderation"])
