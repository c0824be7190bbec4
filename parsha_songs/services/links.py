from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import secrets
from typing import Any, Protocol
from urllib.parse import urlencode

from fastapi import Depends

from parsha_songs.core.config import Settings, get_settings
from parsha_songs.core.sanitize import (
    ADDED_BY_MAX_LENGTH,
    VERSE_REF_MAX_LENGTH,
    clean_optional_text,
    clean_song_url,
    clean_title,
)
from parsha_songs.services.notifications import NewLinkNotification, get_notification_dispatcher
from parsha_songs.services.reference import ReferenceCatalog, get_reference_catalog
from parsha_songs.services.repository import TARGET_KINDS, LinkRepository, get_repository, tanach_target_key
from parsha_songs.services.songs import SongIdentityResolver

logger = logging.getLogger(__name__)

APPROVAL_TOKEN_BYTES = 24
APPROVAL_PATH = "/links/approve"


class LinkValidationError(Exception):
    """Raised when a submission names a target that cannot be linked."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class NotificationSink(Protocol):
    def dispatch(self, payload: NewLinkNotification) -> Any: ...


@dataclass(slots=True)
class LinkSubmission:
    target_kind: str
    song_title: str
    parasha_id: str | None = None
    target_id: str | None = None
    book_id: str | None = None
    chapter: int | None = None
    song_url: str | None = None
    verse_ref: str | None = None
    added_by: str | None = None


@dataclass(slots=True)
class _ResolvedTarget:
    parasha_id: str
    target_id: str | None


def new_approval_token() -> str:
    # 24 random bytes always encode to 32 url-safe characters.
    return secrets.token_urlsafe(APPROVAL_TOKEN_BYTES)


class LinkLifecycleManager:
    """Moderation state machine for song links.

    pending -> approved (token redemption or moderator approve)
    pending -> rejected (moderator reject)
    Moderator submissions start out approved and send no notification.
    Reject is accepted from any state so a moderator can take back an
    approval; the cleared token means a rejected link cannot be re-opened
    through the emailed link.
    """

    def __init__(
        self,
        *,
        repository: LinkRepository,
        catalog: ReferenceCatalog,
        notifier: NotificationSink,
        resolver: SongIdentityResolver | None = None,
        public_base_url: str | None = None,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._notifier = notifier
        self._resolver = resolver or SongIdentityResolver(repository)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    async def submit_link(self, submission: LinkSubmission, *, is_moderator: bool) -> dict[str, Any]:
        title = clean_title(submission.song_title)
        if not title:
            raise LinkValidationError("missing-title")
        try:
            song_url = clean_song_url(submission.song_url)
        except ValueError as exc:
            raise LinkValidationError("invalid-url") from exc

        target = self._resolve_target(submission)
        verse_ref = clean_optional_text(submission.verse_ref, max_length=VERSE_REF_MAX_LENGTH)
        added_by = clean_optional_text(submission.added_by, max_length=ADDED_BY_MAX_LENGTH)

        song_id = await self._resolver.resolve(title, song_url)

        if is_moderator:
            status = "approved"
            approval_token = None
            approved_at: datetime | None = datetime.now(timezone.utc)
        else:
            status = "pending"
            approval_token = new_approval_token()
            approved_at = None

        link_id = await self._repository.insert_link(
            parasha_id=target.parasha_id,
            target_kind=submission.target_kind,
            target_id=target.target_id,
            song_id=song_id,
            verse_ref=verse_ref,
            added_by=added_by,
            status=status,
            approval_token=approval_token,
            approved_at=approved_at,
        )
        logger.info(
            "link submitted id=%s kind=%s parasha_id=%s status=%s",
            link_id,
            submission.target_kind,
            target.parasha_id,
            status,
        )

        if not is_moderator:
            self._notifier.dispatch(
                NewLinkNotification(
                    link_id=link_id,
                    parasha_id=target.parasha_id,
                    target_kind=submission.target_kind,
                    target_id=target.target_id,
                    song_title=title,
                    song_url=song_url,
                    verse_ref=verse_ref,
                    added_by=added_by,
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    approval_url=self.approval_url(approval_token),
                )
            )

        return {"id": link_id, "status": status}

    async def redeem_token(self, token: str | None) -> dict[str, Any] | None:
        row = await self._repository.approve_link_by_token(token)
        if row:
            logger.info("link approved by token id=%s", row["id"])
        return row

    async def approve(self, link_id: int) -> dict[str, Any] | None:
        row = await self._repository.approve_link_by_id(link_id)
        if row:
            logger.info("link approved by moderator id=%s", link_id)
        return row

    async def reject(self, link_id: int) -> dict[str, Any] | None:
        row = await self._repository.reject_link_by_id(link_id)
        if row:
            logger.info("link rejected by moderator id=%s", link_id)
        return row

    async def list_pending(self) -> list[dict[str, Any]]:
        return await self._repository.get_pending_links()

    async def delete_link(self, link_id: int) -> bool:
        deleted = await self._repository.delete_link(link_id)
        if deleted:
            logger.info("link deleted id=%s", link_id)
        return deleted > 0

    async def delete_song(self, song_id: str) -> bool:
        deleted = await self._repository.delete_song(song_id)
        if deleted:
            logger.info("song deleted id=%s", song_id)
        return deleted > 0

    async def relink_song(self, song_id: str, song_url: str | None) -> dict[str, Any] | None:
        try:
            cleaned_url = clean_song_url(song_url)
        except ValueError as exc:
            raise LinkValidationError("invalid-url") from exc
        return await self._repository.update_song_external_url(song_id, cleaned_url)

    def approval_url(self, token: str | None) -> str | None:
        if not token or not self._public_base_url:
            return None
        return f"{self._public_base_url}{APPROVAL_PATH}?{urlencode({'token': token})}"

    def _resolve_target(self, submission: LinkSubmission) -> _ResolvedTarget:
        kind = submission.target_kind
        if kind not in TARGET_KINDS:
            raise LinkValidationError("unknown-target-kind")

        if kind == "tanach":
            # Tanach chapters are open-ended; the book id rides in parasha_id.
            if not submission.book_id or submission.chapter is None or submission.chapter < 1:
                raise LinkValidationError("missing-tanach-target")
            return _ResolvedTarget(
                parasha_id=submission.book_id,
                target_id=tanach_target_key(submission.book_id, submission.chapter),
            )

        if not submission.parasha_id or self._catalog.get_parasha(submission.parasha_id) is None:
            raise LinkValidationError("unknown-parasha")

        if kind == "haftarah":
            if not self._catalog.has_haftarah(submission.parasha_id, submission.target_id):
                raise LinkValidationError("haftarah-not-under-this-parasha")
            return _ResolvedTarget(parasha_id=submission.parasha_id, target_id=submission.target_id)

        return _ResolvedTarget(parasha_id=submission.parasha_id, target_id=None)


def get_link_manager(
    repository: LinkRepository = Depends(get_repository),
    catalog: ReferenceCatalog = Depends(get_reference_catalog),
    notifier: NotificationSink = Depends(get_notification_dispatcher),
    settings: Settings = Depends(get_settings),
) -> LinkLifecycleManager:
    return LinkLifecycleManager(
        repository=repository,
        catalog=catalog,
        notifier=notifier,
        public_base_url=settings.public_base_url,
    )
