from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from parsha_songs.core.config import get_settings

LINK_STATUSES = ("pending", "approved", "rejected")
TARGET_KINDS = ("parasha", "haftarah", "tanach")
DEFAULT_PUBLIC_STATUSES = ("approved",)

# links.id is a signed 32-bit serial on PostgreSQL.
LINK_ID_MAX = 2**31 - 1

# Columns returned for every joined link row, in both backends.
LINK_ROW_FIELDS = (
    "id",
    "parasha_id",
    "target_kind",
    "target_id",
    "song_id",
    "verse_ref",
    "added_by",
    "status",
    "approval_token",
    "approved_at",
    "added_at",
    "song_title",
    "song_url",
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database cannot be reached or opened."""


class RepositoryBackendError(RepositoryError):
    """Raised when the backend rejects or fails a statement."""


class LinkRepository(ABC):
    """Data-access contract shared by the PostgreSQL and SQLite backends.

    Every method returns plain dicts, ints or None so callers never see
    driver-specific row types. "Not found" is signalled by None (or a zero
    row count for deletes), never by an exception.
    """

    backend_name: str = "abstract"

    @abstractmethod
    async def initialize(self) -> None:
        """Create or evolve the schema and backfill legacy link statuses."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def find_song_by_identity(self, title: str, external_url: str | None) -> dict[str, Any] | None: ...

    @abstractmethod
    async def insert_song(self, song_id: str, title: str, external_url: str | None) -> None: ...

    @abstractmethod
    async def update_song_external_url(self, song_id: str, external_url: str | None) -> dict[str, Any] | None: ...

    @abstractmethod
    async def insert_link(
        self,
        *,
        parasha_id: str,
        target_kind: str,
        target_id: str | None,
        song_id: str,
        verse_ref: str | None = None,
        added_by: str | None = None,
        status: str = "pending",
        approval_token: str | None = None,
        approved_at: datetime | None = None,
    ) -> int: ...

    @abstractmethod
    async def get_link(self, link_id: int) -> dict[str, Any] | None: ...

    @abstractmethod
    async def get_links_by_parasha(
        self,
        parasha_id: str,
        target_kind: str | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_links_by_tanach(
        self,
        book_id: str,
        chapter: int,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def approve_link_by_token(self, token: str | None) -> dict[str, Any] | None: ...

    @abstractmethod
    async def approve_link_by_id(self, link_id: int) -> dict[str, Any] | None: ...

    @abstractmethod
    async def reject_link_by_id(self, link_id: int) -> dict[str, Any] | None: ...

    @abstractmethod
    async def get_pending_links(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def delete_link(self, link_id: int) -> int: ...

    @abstractmethod
    async def delete_song(self, song_id: str) -> int: ...

    @abstractmethod
    async def get_total_songs(self) -> int: ...

    @abstractmethod
    async def record_visit(self, ip: str, user_agent: str | None) -> None: ...

    @abstractmethod
    async def get_visit_stats(self) -> dict[str, int]: ...


def tanach_target_key(book_id: str, chapter: int) -> str:
    return f"{book_id}:{chapter}"


def is_link_id(value: int) -> bool:
    """False for ids no links row can have, so lookups skip the database."""
    return 0 < value <= LINK_ID_MAX


def resolve_status_filter(statuses: Sequence[str] | None) -> tuple[str, ...]:
    """None means the public default; an explicit empty sequence disables filtering."""
    if statuses is None:
        return DEFAULT_PUBLIC_STATUSES
    return tuple(statuses)


def coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def song_row_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "title": row["title"],
        "external_url": row["external_url"],
    }


def link_row_to_dict(row: Mapping[str, Any]) -> dict[str, Any]:
    link = {field: row[field] for field in LINK_ROW_FIELDS}
    link["id"] = int(link["id"])
    link["song_id"] = str(link["song_id"])
    link["approved_at"] = coerce_datetime(link["approved_at"])
    link["added_at"] = coerce_datetime(link["added_at"])
    return link


@lru_cache
def get_repository() -> LinkRepository:
    settings = get_settings()
    if settings.database_url:
        from parsha_songs.services.postgres_repository import PostgresRepository

        return PostgresRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )

    from parsha_songs.services.sqlite_repository import SqliteRepository

    return SqliteRepository(database_path=settings.sqlite_path)
