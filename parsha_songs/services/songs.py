from __future__ import annotations

from collections.abc import Callable
import logging
from uuid import uuid4

from parsha_songs.services.repository import LinkRepository

logger = logging.getLogger(__name__)


def _new_song_id() -> str:
    return str(uuid4())


class SongIdentityResolver:
    """Find-or-create songs keyed by (title, external url).

    The lookup and the insert are two statements with no uniqueness
    constraint behind them, so two concurrent first submissions of the same
    pair can both insert. That leaves a duplicate song row, which is
    tolerated: each link still points at exactly one song.
    """

    def __init__(self, repository: LinkRepository, id_factory: Callable[[], str] = _new_song_id) -> None:
        self._repository = repository
        self._id_factory = id_factory

    async def resolve(self, title: str, external_url: str | None) -> str:
        existing = await self._repository.find_song_by_identity(title, external_url)
        if existing:
            return existing["id"]

        song_id = self._id_factory()
        await self._repository.insert_song(song_id, title, external_url)
        logger.info("created song id=%s title=%r", song_id, title)
        return song_id
