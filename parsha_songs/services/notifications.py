from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from functools import lru_cache
from html import escape
import logging
import smtplib
from typing import Any

import httpx
from opentelemetry import trace

from parsha_songs.core.config import Settings, get_settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CHANNEL_WEBHOOK = "webhook"
CHANNEL_EMAIL_API = "email_api"
CHANNEL_SMTP = "smtp"
CHANNEL_LOG = "log"


class NotificationDeliveryError(Exception):
    """Raised by a single channel when it could not deliver."""


@dataclass(slots=True)
class NewLinkNotification:
    link_id: int | str
    parasha_id: str
    target_kind: str
    target_id: str | None
    song_title: str
    song_url: str | None
    verse_ref: str | None
    added_by: str | None
    timestamp: str
    approval_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def subject(self) -> str:
        return f"New song added: {self.song_title or '(no title)'}"

    def text_lines(self) -> list[str]:
        target = self.target_kind
        if self.target_id:
            target = f"{target} / {self.target_id}"
        lines = [
            f"Parasha: {self.parasha_id}",
            f"Target: {target}",
            f"Title: {self.song_title or ''}",
            f"URL: {self.song_url or ''}",
            f"Verse: {self.verse_ref or ''}",
            f"Added by: {self.added_by or ''}",
            f"ID: {self.link_id}",
            f"Time: {self.timestamp}",
        ]
        if self.approval_url:
            lines.append(f"Approve: {self.approval_url}")
        return lines


def sample_notification() -> NewLinkNotification:
    return NewLinkNotification(
        link_id="TEST-123",
        parasha_id="bereshit",
        target_kind="parasha",
        target_id=None,
        song_title="Test Song",
        song_url="https://example.com/test",
        verse_ref="Genesis 1:1",
        added_by="tester",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


class NotificationDispatcher:
    """Announces new pending submissions on the first channel that works.

    Order: webhook (skipped when the email API is configured, so a message is
    not delivered twice), Brevo email API, SMTP, and finally a log line.
    Channel failures are logged and never leave `notify`.
    """

    def __init__(self, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._http_client = http_client
        self._background_tasks: set[asyncio.Task[str]] = set()

    @property
    def email_api_configured(self) -> bool:
        return bool(self.settings.brevo_api_key and self.settings.notify_email)

    @property
    def smtp_configured(self) -> bool:
        return bool(
            self.settings.smtp_host
            and self.settings.smtp_user
            and self.settings.smtp_password
            and self.settings.notify_email
        )

    def dispatch(self, payload: NewLinkNotification) -> asyncio.Task[str]:
        """Schedule `notify` without waiting for it."""
        task = asyncio.create_task(self.notify(payload))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def notify(self, payload: NewLinkNotification) -> str:
        with tracer.start_as_current_span("notifications.new_link") as span:
            span.set_attribute("link.id", str(payload.link_id))
            try:
                channel = await self._deliver(payload)
            except Exception:  # pragma: no cover - last-resort boundary
                logger.exception("notification chain failed for link_id=%s", payload.link_id)
                channel = self._log_fallback(payload)
            span.set_attribute("notification.channel", channel)
            return channel

    async def _deliver(self, payload: NewLinkNotification) -> str:
        if self.settings.notify_webhook and not self.email_api_configured:
            try:
                await self._send_webhook(payload)
                return CHANNEL_WEBHOOK
            except (httpx.HTTPError, NotificationDeliveryError) as exc:
                logger.warning("webhook notify failed: %s", exc)

        if self.email_api_configured:
            try:
                await self._send_email_api(payload)
                return CHANNEL_EMAIL_API
            except (httpx.HTTPError, NotificationDeliveryError) as exc:
                logger.warning("email api notify failed: %s", exc)

        if self.smtp_configured:
            try:
                await asyncio.to_thread(self._send_smtp, payload)
                return CHANNEL_SMTP
            except (smtplib.SMTPException, OSError) as exc:
                logger.warning("smtp notify failed: %s", exc)

        return self._log_fallback(payload)

    async def _send_webhook(self, payload: NewLinkNotification) -> None:
        response = await self._post(self.settings.notify_webhook or "", json=payload.to_dict())
        if response.is_error:
            raise NotificationDeliveryError(f"webhook returned status={response.status_code}")

    async def _send_email_api(self, payload: NewLinkNotification) -> None:
        text = "\n".join(payload.text_lines())
        body = {
            "sender": {
                "email": self.settings.notify_from or "noreply@example.com",
                "name": "Parsha Songs",
            },
            "to": [{"email": self.settings.notify_email}],
            "subject": payload.subject(),
            "textContent": text,
            "htmlContent": f'<pre style="font-family:inherit">{escape(text)}</pre>',
        }
        response = await self._post(
            self.settings.brevo_api_url,
            json=body,
            headers={
                "accept": "application/json",
                "api-key": self.settings.brevo_api_key or "",
            },
        )
        if response.is_error:
            raise NotificationDeliveryError(
                f"email api returned status={response.status_code} body={response.text[:200]}"
            )

    def _send_smtp(self, payload: NewLinkNotification) -> None:
        text = "\n".join(payload.text_lines())
        message = EmailMessage()
        message["Subject"] = payload.subject()
        message["From"] = self.settings.notify_from or self.settings.smtp_user or ""
        message["To"] = self.settings.notify_email or ""
        message.set_content(text)
        message.add_alternative(f'<pre style="font-family:inherit">{escape(text)}</pre>', subtype="html")

        timeout = self.settings.notify_timeout_seconds
        host = self.settings.smtp_host or ""
        if self.settings.smtp_secure:
            with smtplib.SMTP_SSL(host, self.settings.smtp_port, timeout=timeout) as client:
                client.login(self.settings.smtp_user or "", self.settings.smtp_password or "")
                client.send_message(message)
            return

        with smtplib.SMTP(host, self.settings.smtp_port, timeout=timeout) as client:
            client.ehlo()
            if client.has_extn("starttls"):
                client.starttls()
            client.login(self.settings.smtp_user or "", self.settings.smtp_password or "")
            client.send_message(message)

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=self.settings.notify_timeout_seconds) as client:
            return await client.post(url, **kwargs)

    @staticmethod
    def _log_fallback(payload: NewLinkNotification) -> str:
        logger.info("new link added: %s", payload.to_dict())
        return CHANNEL_LOG


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_settings())
