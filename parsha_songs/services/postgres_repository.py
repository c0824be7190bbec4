from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from parsha_songs.services.repository import (
    LINK_STATUSES,
    LinkRepository,
    RepositoryBackendError,
    RepositoryUnavailableError,
    is_link_id,
    link_row_to_dict,
    resolve_status_filter,
    song_row_to_dict,
    tanach_target_key,
)

_SCHEMA_STATEMENTS = (
    """
    create table if not exists songs (
      id uuid primary key,
      title text not null,
      version text,
      external_url text
    )
    """,
    """
    create table if not exists links (
      id serial primary key,
      parasha_id text not null,
      target_kind text not null,
      target_id text,
      song_id uuid not null references songs(id) on delete cascade,
      verse_ref text,
      added_by text,
      status text not null default 'pending',
      approval_token text,
      approved_at timestamptz,
      added_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists visits (
      id serial primary key,
      ip varchar(45) not null,
      user_agent text,
      visited_at timestamptz default now()
    )
    """,
    "create index if not exists idx_visits_ip on visits(ip)",
    "create index if not exists idx_visits_date on visits(visited_at)",
    "create index if not exists idx_links_parasha on links(parasha_id)",
    "create index if not exists idx_links_target on links(target_kind, target_id)",
    # Older deployments predate moderation tokens.
    "alter table links add column if not exists approval_token text",
    "alter table links add column if not exists approved_at timestamptz",
    "alter table links alter column status set default 'pending'",
    """
    create unique index if not exists idx_links_approval_token
      on links(approval_token)
      where approval_token is not null
    """,
)

_BACKFILL_LEGACY_STATUSES = """
update links
   set status = 'approved'
 where (status is null or status = '' or status <> all($1::text[]))
    or (status = 'pending' and (approval_token is null or approval_token = ''))
"""

_LINK_COLUMNS = """
  l.id,
  l.parasha_id,
  l.target_kind,
  l.target_id,
  l.song_id::text as song_id,
  l.verse_ref,
  l.added_by,
  l.status,
  l.approval_token,
  l.approved_at,
  l.added_at,
  s.title as song_title,
  s.external_url as song_url
"""


class PostgresRepository(LinkRepository):
    backend_name = "postgres"

    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 10) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def initialize(self) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    await conn.execute(statement)
                await conn.execute(_BACKFILL_LEGACY_STATUSES, list(LINK_STATUSES))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryBackendError(f"schema initialization failed: {exc}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def find_song_by_identity(self, title: str, external_url: str | None) -> dict[str, Any] | None:
        row = await self._fetchrow(
            """
            select id::text as id, title, external_url
            from songs
            where title = $1
              and coalesce(external_url, '') = coalesce($2, '')
            limit 1
            """,
            title,
            external_url or None,
        )
        return song_row_to_dict(row) if row else None

    async def insert_song(self, song_id: str, title: str, external_url: str | None) -> None:
        await self._execute(
            "insert into songs (id, title, version, external_url) values ($1::uuid, $2, null, $3)",
            song_id,
            title,
            external_url or None,
        )

    async def update_song_external_url(self, song_id: str, external_url: str | None) -> dict[str, Any] | None:
        if not _is_uuid(song_id):
            return None
        row = await self._fetchrow(
            """
            update songs
            set external_url = $2
            where id = $1::uuid
            returning id::text as id, title, external_url
            """,
            song_id,
            external_url or None,
        )
        return song_row_to_dict(row) if row else None

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
    ) -> int:
        link_id = await self._fetchval(
            """
            insert into links (
              parasha_id,
              target_kind,
              target_id,
              song_id,
              verse_ref,
              added_by,
              status,
              approval_token,
              approved_at
            )
            values ($1, $2, $3, $4::uuid, $5, $6, $7, $8, $9)
            returning id
            """,
            parasha_id,
            target_kind,
            target_id or None,
            song_id,
            verse_ref or None,
            added_by or None,
            status,
            approval_token or None,
            approved_at,
        )
        return int(link_id)

    async def get_link(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        row = await self._fetchrow(
            f"""
            select {_LINK_COLUMNS}
            from links l
            join songs s on s.id = l.song_id
            where l.id = $1
            """,
            link_id,
        )
        return link_row_to_dict(row) if row else None

    async def get_links_by_parasha(
        self,
        parasha_id: str,
        target_kind: str | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        params: list[Any] = [parasha_id]
        where = ["l.parasha_id = $1"]
        if target_kind:
            params.append(target_kind)
            where.append(f"l.target_kind = ${len(params)}")
        return await self._select_links(where, params, statuses)

    async def get_links_by_tanach(
        self,
        book_id: str,
        chapter: int,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        params: list[Any] = [tanach_target_key(book_id, chapter)]
        where = ["l.target_kind = 'tanach'", "l.target_id = $1"]
        return await self._select_links(where, params, statuses)

    async def approve_link_by_token(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        # One statement: a concurrent redemption re-checks the predicate after
        # the row lock and finds the token already cleared.
        row = await self._fetchrow(
            f"""
            with l as (
              update links
                 set status = 'approved',
                     approval_token = null,
                     approved_at = coalesce(approved_at, now())
               where approval_token = $1
               returning *
            )
            select {_LINK_COLUMNS}
            from l
            join songs s on s.id = l.song_id
            """,
            token,
        )
        return link_row_to_dict(row) if row else None

    async def approve_link_by_id(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        row = await self._fetchrow(
            f"""
            with l as (
              update links
                 set status = 'approved',
                     approval_token = null,
                     approved_at = coalesce(approved_at, now())
               where id = $1
               returning *
            )
            select {_LINK_COLUMNS}
            from l
            join songs s on s.id = l.song_id
            """,
            link_id,
        )
        return link_row_to_dict(row) if row else None

    async def reject_link_by_id(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        row = await self._fetchrow(
            f"""
            with l as (
              update links
                 set status = 'rejected',
                     approval_token = null,
                     approved_at = null
               where id = $1
               returning *
            )
            select {_LINK_COLUMNS}
            from l
            join songs s on s.id = l.song_id
            """,
            link_id,
        )
        return link_row_to_dict(row) if row else None

    async def get_pending_links(self) -> list[dict[str, Any]]:
        rows = await self._fetch(
            f"""
            select {_LINK_COLUMNS}
            from links l
            join songs s on s.id = l.song_id
            where l.status = 'pending'
            order by l.added_at asc, l.id asc
            """
        )
        return [link_row_to_dict(row) for row in rows]

    async def delete_link(self, link_id: int) -> int:
        if not is_link_id(link_id):
            return 0
        deleted = await self._fetchval(
            """
            with deleted as (
              delete from links where id = $1 returning 1
            )
            select count(*) from deleted
            """,
            link_id,
        )
        return int(deleted or 0)

    async def delete_song(self, song_id: str) -> int:
        if not _is_uuid(song_id):
            return 0
        # links go with it through on delete cascade
        deleted = await self._fetchval(
            """
            with deleted as (
              delete from songs where id = $1::uuid returning 1
            )
            select count(*) from deleted
            """,
            song_id,
        )
        return int(deleted or 0)

    async def get_total_songs(self) -> int:
        total = await self._fetchval("select count(distinct song_id) from links where status = 'approved'")
        return int(total or 0)

    async def record_visit(self, ip: str, user_agent: str | None) -> None:
        await self._execute("insert into visits (ip, user_agent) values ($1, $2)", ip, user_agent)

    async def get_visit_stats(self) -> dict[str, int]:
        row = await self._fetchrow(
            """
            select
              count(*) as total,
              count(distinct ip) as unique_ips,
              coalesce(sum(case when visited_at >= now() - interval '1 day' then 1 else 0 end), 0) as today
            from visits
            """
        )
        return {
            "total": int(row["total"]),
            "unique": int(row["unique_ips"]),
            "today": int(row["today"]),
        }

    async def _select_links(
        self,
        where: list[str],
        params: list[Any],
        statuses: Sequence[str] | None,
    ) -> list[dict[str, Any]]:
        status_filter = resolve_status_filter(statuses)
        if status_filter:
            params.append(list(status_filter))
            where.append(f"l.status = any(${len(params)}::text[])")
        rows = await self._fetch(
            f"""
            select {_LINK_COLUMNS}
            from links l
            join songs s on s.id = l.song_id
            where {" and ".join(where)}
            order by l.added_at desc, l.id desc
            """,
            *params,
        )
        return [link_row_to_dict(row) for row in rows]

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _fetchval(self, query: str, *args: Any) -> Any:
        pool = await self._get_pool()
        try:
            return await pool.fetchval(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _execute(self, query: str, *args: Any) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("PS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True
