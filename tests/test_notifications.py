from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from parsha_songs.core.config import Settings
import parsha_songs.services.notifications as notifications
from parsha_songs.services.notifications import NewLinkNotification, NotificationDispatcher


def _payload(**overrides: Any) -> NewLinkNotification:
    fields: dict[str, Any] = {
        "link_id": 7,
        "parasha_id": "bereshit",
        "target_kind": "haftarah",
        "target_id": "bereshit-haftarah",
        "song_title": "Oseh Shalom",
        "song_url": "https://example.com/oseh",
        "verse_ref": "Isaiah 42:5",
        "added_by": "tester",
        "timestamp": "2026-01-01T00:00:00+00:00",
        "approval_url": "https://songs.example.org/links/approve?token=abc",
    }
    fields.update(overrides)
    return NewLinkNotification(**fields)


def _settings(**overrides: Any) -> Settings:
    fields: dict[str, Any] = {
        "notify_webhook": None,
        "notify_email": None,
        "brevo_api_key": None,
        "smtp_host": None,
        "smtp_user": None,
        "smtp_password": None,
    }
    fields.update(overrides)
    return Settings(**fields)


class FakeSMTP:
    sent: list[Any] = []
    logins: list[tuple[str, str]] = []
    started_tls = 0
    offers_starttls = True

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def ehlo(self) -> None:
        return None

    def has_extn(self, name: str) -> bool:
        return name == "starttls" and FakeSMTP.offers_starttls

    def starttls(self) -> None:
        FakeSMTP.started_tls += 1

    def login(self, user: str, password: str) -> None:
        FakeSMTP.logins.append((user, password))

    def send_message(self, message: Any) -> None:
        FakeSMTP.sent.append(message)


def _reset_fake_smtp() -> None:
    FakeSMTP.sent = []
    FakeSMTP.logins = []
    FakeSMTP.started_tls = 0
    FakeSMTP.offers_starttls = True


def test_text_lines_include_target_and_approval_url() -> None:
    lines = _payload().text_lines()

    assert "Target: haftarah / bereshit-haftarah" in lines
    assert lines[-1] == "Approve: https://songs.example.org/links/approve?token=abc"
    assert _payload(approval_url=None).text_lines()[-1].startswith("Time: ")
    assert _payload(song_title="").subject() == "New song added: (no title)"


def test_webhook_receives_payload_json() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(
                _settings(notify_webhook="https://hooks.example.com/new-link"),
                http_client=client,
            )
            return await dispatcher.notify(_payload())

    channel = asyncio.run(run())

    assert channel == "webhook"
    assert len(captured) == 1
    assert str(captured[0].url) == "https://hooks.example.com/new-link"
    body = json.loads(captured[0].content)
    assert body["link_id"] == 7
    assert body["song_title"] == "Oseh Shalom"


def test_email_api_preempts_webhook() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"messageId": "m-1"})

    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(
                _settings(
                    notify_webhook="https://hooks.example.com/new-link",
                    notify_email="moderator@example.org",
                    notify_from="songs@example.org",
                    brevo_api_key="brevo-key",
                ),
                http_client=client,
            )
            return await dispatcher.notify(_payload(song_title="<b>Bold</b>"))

    channel = asyncio.run(run())

    assert channel == "email_api"
    assert [request.url.host for request in captured] == ["api.brevo.com"]
    request = captured[0]
    assert request.headers["api-key"] == "brevo-key"
    body = json.loads(request.content)
    assert body["to"] == [{"email": "moderator@example.org"}]
    assert body["sender"]["email"] == "songs@example.org"
    assert body["subject"] == "New song added: <b>Bold</b>"
    assert "&lt;b&gt;Bold&lt;/b&gt;" in body["htmlContent"]


def test_email_api_failure_falls_through_to_smtp(monkeypatch) -> None:
    _reset_fake_smtp()
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream down")

    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(
                _settings(
                    notify_email="moderator@example.org",
                    brevo_api_key="brevo-key",
                    smtp_host="smtp.example.org",
                    smtp_user="mailer",
                    smtp_password="secret",
                ),
                http_client=client,
            )
            return await dispatcher.notify(_payload())

    channel = asyncio.run(run())

    assert channel == "smtp"
    assert FakeSMTP.started_tls == 1
    assert FakeSMTP.logins == [("mailer", "secret")]
    assert len(FakeSMTP.sent) == 1
    message = FakeSMTP.sent[0]
    assert message["To"] == "moderator@example.org"
    assert message["From"] == "mailer"
    assert message["Subject"] == "New song added: Oseh Shalom"


def test_webhook_network_error_falls_back_to_log(caplog) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(
                _settings(notify_webhook="https://hooks.example.com/new-link"),
                http_client=client,
            )
            return await dispatcher.notify(_payload())

    with caplog.at_level(logging.INFO, logger="parsha_songs.services.notifications"):
        channel = asyncio.run(run())

    assert channel == "log"
    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("webhook notify failed") for message in messages)
    assert any(message.startswith("new link added") for message in messages)


def test_unconfigured_dispatcher_logs_the_notification(caplog) -> None:
    dispatcher = NotificationDispatcher(_settings())

    assert dispatcher.email_api_configured is False
    assert dispatcher.smtp_configured is False

    with caplog.at_level(logging.INFO, logger="parsha_songs.services.notifications"):
        channel = asyncio.run(dispatcher.notify(_payload()))

    assert channel == "log"
    assert "Oseh Shalom" in caplog.text


def test_dispatch_runs_in_background() -> None:
    dispatcher = NotificationDispatcher(_settings())

    async def run() -> tuple[str, int]:
        task = dispatcher.dispatch(_payload())
        assert isinstance(task, asyncio.Task)
        channel = await task
        await asyncio.sleep(0)
        return channel, len(dispatcher._background_tasks)

    channel, remaining = asyncio.run(run())

    assert channel == "log"
    assert remaining == 0


def test_smtp_skips_starttls_when_server_does_not_offer_it(monkeypatch) -> None:
    _reset_fake_smtp()
    FakeSMTP.offers_starttls = False
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    dispatcher = NotificationDispatcher(
        _settings(
            notify_email="moderator@example.org",
            smtp_host="relay.example.org",
            smtp_user="mailer",
            smtp_password="secret",
        )
    )

    channel = asyncio.run(dispatcher.notify(_payload()))

    assert channel == "smtp"
    assert FakeSMTP.started_tls == 0
    assert len(FakeSMTP.sent) == 1
