import hmac

from fastapi import Depends, Header, HTTPException, status

from parsha_songs.core.config import Settings, get_settings

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def is_moderator_token(settings: Settings, candidate: str | None) -> bool:
    if not settings.admin_token or not candidate:
        return False
    return hmac.compare_digest(settings.admin_token.encode("utf-8"), candidate.encode("utf-8"))


async def get_moderator_flag(
    settings: Settings = Depends(get_settings),
    x_admin_token: str | None = Header(default=None, alias=ADMIN_TOKEN_HEADER),
) -> bool:
    return is_moderator_token(settings, x_admin_token)


async def require_moderator(
    settings: Settings = Depends(get_settings),
    x_admin_token: str | None = Header(default=None, alias=ADMIN_TOKEN_HEADER),
) -> None:
    if not settings.admin_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="moderation is not configured",
        )
    if not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"moderation requires {ADMIN_TOKEN_HEADER}",
        )
    if not is_moderator_token(settings, x_admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin token")
