from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
import sqlite3
from typing import Any

import aiosqlite

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

# ISO-8601 UTC with millisecond precision, so text ordering matches time ordering.
_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_SCHEMA_SCRIPT = f"""
create table if not exists songs (
  id text primary key,
  title text not null,
  version text,
  external_url text
);
create table if not exists links (
  id integer primary key autoincrement,
  parasha_id text not null,
  target_kind text not null,
  target_id text,
  song_id text not null,
  verse_ref text,
  added_by text,
  status text not null default 'pending',
  approval_token text,
  approved_at text,
  added_at text not null default ({_NOW})
);
create table if not exists visits (
  id integer primary key autoincrement,
  ip text not null,
  user_agent text,
  visited_at text default ({_NOW})
);
create index if not exists idx_visits_ip on visits(ip);
create index if not exists idx_visits_date on visits(visited_at);
create index if not exists idx_links_parasha on links(parasha_id);
create index if not exists idx_links_target on links(target_kind, target_id);
"""

_EVOLVED_LINK_COLUMNS = {
    "approval_token": "alter table links add column approval_token text",
    "approved_at": "alter table links add column approved_at text",
}

_TOKEN_INDEX = """
create unique index if not exists idx_links_approval_token
  on links(approval_token)
  where approval_token is not null
"""

_BACKFILL_LEGACY_STATUSES = f"""
update links
   set status = 'approved'
 where (status is null or status = '' or status not in ({", ".join("?" for _ in LINK_STATUSES)}))
    or (status = 'pending' and (approval_token is null or approval_token = ''))
"""

# Older databases stored "YYYY-MM-DD HH:MM:SS", which sorts before the ISO form.
_LEGACY_TIMESTAMP_COLUMNS = (
    ("links", "added_at"),
    ("links", "approved_at"),
    ("visits", "visited_at"),
)

_LINK_SELECT = """
select
  l.id,
  l.parasha_id,
  l.target_kind,
  l.target_id,
  l.song_id,
  l.verse_ref,
  l.added_by,
  l.status,
  l.approval_token,
  l.approved_at,
  l.added_at,
  s.title as song_title,
  s.external_url as song_url
from links l
join songs s on s.id = l.song_id
"""


class SqliteRepository(LinkRepository):
    """Embedded single-file backend for local and development use.

    One aiosqlite connection in autocommit mode is shared by all callers;
    aiosqlite runs its statements one at a time on a dedicated thread, which
    is what makes single-statement updates such as token redemption atomic.
    SQLite has no enforced foreign key here, so song deletion removes the
    child links first.
    """

    backend_name = "sqlite"

    def __init__(self, database_path: str, busy_timeout_ms: int = 5000) -> None:
        self.database_path = database_path
        self.busy_timeout_ms = busy_timeout_ms
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        conn = await self._get_connection()
        try:
            await conn.executescript(_SCHEMA_SCRIPT)
            async with conn.execute("pragma table_info(links)") as cursor:
                existing_columns = {row["name"] for row in await cursor.fetchall()}
            for column, statement in _EVOLVED_LINK_COLUMNS.items():
                if column not in existing_columns:
                    await conn.execute(statement)
            await conn.execute(_TOKEN_INDEX)
            await conn.execute(_BACKFILL_LEGACY_STATUSES, LINK_STATUSES)
            for table, column in _LEGACY_TIMESTAMP_COLUMNS:
                await conn.execute(
                    f"""
                    update {table}
                       set {column} = strftime('%Y-%m-%dT%H:%M:%fZ', {column})
                     where {column} not like '%T%'
                       and strftime('%Y-%m-%dT%H:%M:%fZ', {column}) is not null
                    """
                )
        except sqlite3.Error as exc:
            raise RepositoryBackendError(f"schema initialization failed: {exc}") from exc

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def find_song_by_identity(self, title: str, external_url: str | None) -> dict[str, Any] | None:
        rows = await self._fetchall(
            """
            select id, title, external_url
            from songs
            where title = ?
              and ifnull(external_url, '') = ifnull(?, '')
            limit 1
            """,
            (title, external_url or None),
        )
        return song_row_to_dict(rows[0]) if rows else None

    async def insert_song(self, song_id: str, title: str, external_url: str | None) -> None:
        await self._execute(
            "insert into songs (id, title, version, external_url) values (?, ?, null, ?)",
            (song_id, title, external_url or None),
        )

    async def update_song_external_url(self, song_id: str, external_url: str | None) -> dict[str, Any] | None:
        rows = await self._fetchall(
            """
            update songs
            set external_url = ?
            where id = ?
            returning id, title, external_url
            """,
            (external_url or None, song_id),
        )
        return song_row_to_dict(rows[0]) if rows else None

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
        conn = await self._get_connection()
        try:
            async with conn.execute(
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
                values (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    parasha_id,
                    target_kind,
                    target_id or None,
                    song_id,
                    verse_ref or None,
                    added_by or None,
                    status,
                    approval_token or None,
                    _format_timestamp(approved_at),
                ),
            ) as cursor:
                return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def get_link(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        rows = await self._fetchall(f"{_LINK_SELECT} where l.id = ?", (link_id,))
        return link_row_to_dict(rows[0]) if rows else None

    async def get_links_by_parasha(
        self,
        parasha_id: str,
        target_kind: str | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        where = ["l.parasha_id = ?"]
        params: list[Any] = [parasha_id]
        if target_kind:
            where.append("l.target_kind = ?")
            params.append(target_kind)
        return await self._select_links(where, params, statuses)

    async def get_links_by_tanach(
        self,
        book_id: str,
        chapter: int,
        statuses: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        where = ["l.target_kind = 'tanach'", "l.target_id = ?"]
        params: list[Any] = [tanach_target_key(book_id, chapter)]
        return await self._select_links(where, params, statuses)

    async def approve_link_by_token(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        rows = await self._fetchall(
            f"""
            update links
               set status = 'approved',
                   approval_token = null,
                   approved_at = coalesce(approved_at, {_NOW})
             where approval_token = ?
            returning id
            """,
            (token,),
        )
        if not rows:
            return None
        return await self.get_link(int(rows[0]["id"]))

    async def approve_link_by_id(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        rows = await self._fetchall(
            f"""
            update links
               set status = 'approved',
                   approval_token = null,
                   approved_at = coalesce(approved_at, {_NOW})
             where id = ?
            returning id
            """,
            (link_id,),
        )
        if not rows:
            return None
        return await self.get_link(link_id)

    async def reject_link_by_id(self, link_id: int) -> dict[str, Any] | None:
        if not is_link_id(link_id):
            return None
        rows = await self._fetchall(
            """
            update links
               set status = 'rejected',
                   approval_token = null,
                   approved_at = null
             where id = ?
            returning id
            """,
            (link_id,),
        )
        if not rows:
            return None
        return await self.get_link(link_id)

    async def get_pending_links(self) -> list[dict[str, Any]]:
        rows = await self._fetchall(f"{_LINK_SELECT} where l.status = 'pending' order by l.added_at asc, l.id asc")
        return [link_row_to_dict(row) for row in rows]

    async def delete_link(self, link_id: int) -> int:
        if not is_link_id(link_id):
            return 0
        return await self._execute("delete from links where id = ?", (link_id,))

    async def delete_song(self, song_id: str) -> int:
        await self._execute("delete from links where song_id = ?", (song_id,))
        return await self._execute("delete from songs where id = ?", (song_id,))

    async def get_total_songs(self) -> int:
        rows = await self._fetchall("select count(distinct song_id) as total from links where status = 'approved'")
        return int(rows[0]["total"] or 0)

    async def record_visit(self, ip: str, user_agent: str | None) -> None:
        await self._execute("insert into visits (ip, user_agent) values (?, ?)", (ip, user_agent))

    async def get_visit_stats(self) -> dict[str, int]:
        rows = await self._fetchall(
            """
            select
              count(*) as total,
              count(distinct ip) as unique_ips,
              coalesce(sum(case when visited_at >= strftime('%Y-%m-%dT%H:%M:%fZ', 'now', '-1 day')
                           then 1 else 0 end), 0) as today
            from visits
            """
        )
        row = rows[0]
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
            where.append(f"l.status in ({', '.join('?' for _ in status_filter)})")
            params.extend(status_filter)
        rows = await self._fetchall(
            f"{_LINK_SELECT} where {' and '.join(where)} order by l.added_at desc, l.id desc",
            tuple(params),
        )
        return [link_row_to_dict(row) for row in rows]

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        conn = await self._get_connection()
        try:
            async with conn.execute(query, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        conn = await self._get_connection()
        try:
            async with conn.execute(query, params) as cursor:
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise RepositoryBackendError(str(exc)) from exc

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is not None:
            return self._connection

        try:
            connection = await aiosqlite.connect(self.database_path, isolation_level=None)
            connection.row_factory = aiosqlite.Row
            await connection.execute(f"pragma busy_timeout = {int(self.busy_timeout_ms)}")
        except sqlite3.Error as exc:
            raise RepositoryUnavailableError(f"cannot open sqlite database at {self.database_path}") from exc
        self._connection = connection
        return connection


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc_value = value.astimezone(timezone.utc)
    return utc_value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_value.microsecond // 1000:03d}Z"
