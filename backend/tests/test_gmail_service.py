"""Gmail mail source: message flattening, token handling, error mapping."""
import base64
from datetime import datetime, timedelta

import httplib2
import pytest
from googleapiclient.errors import HttpError
from sqlalchemy import select

from app import gmail_service
from app.gmail_service import (
    GmailMailSource,
    MailAuthError,
    MailFetchError,
    MailMessage,
    _get_body,
    email_to_text,
    needs_refresh,
)
from app.models import MailAccount


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def _account(db_session, user, **fields):
    defaults = {
        "provider": "google",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime.utcnow() + timedelta(hours=1),
        "scope": "https://www.googleapis.com/auth/gmail.readonly",
    }
    defaults.update(fields)
    row = MailAccount(user_id=user.id, **defaults)
    db_session.add(row)
    db_session.commit()
    return row


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": "nope"}')


def test_body_prefers_plain_text_part():
    payload = {
        "mimeType": "multipart/alternative",
        "parts": [
            {"mimeType": "text/html", "body": {"data": _b64("<p>HTML version</p>")}},
            {"mimeType": "text/plain", "body": {"data": _b64("Plain version")}},
        ],
    }
    assert _get_body(payload) == "Plain version"


def test_body_falls_back_to_stripped_html_and_nested_parts():
    html_only = {"parts": [{"mimeType": "text/html", "body": {"data": _b64("<b>Due</b> Friday")}}]}
    nested = {
        "parts": [
            {"mimeType": "multipart/alternative", "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("Nested plain")}},
            ]},
        ]
    }

    assert "Due" in _get_body(html_only)
    assert "<b>" not in _get_body(html_only)
    assert _get_body(nested) == "Nested plain"
    assert _get_body({"mimeType": "text/plain"}) == ""


def test_email_to_text_includes_headers_and_snippet_fallback():
    email = {
        "id": "abc",
        "snippet": "Quick reminder about Friday",
        "payload": {
            "headers": [
                {"name": "Subject", "value": "Reminder"},
                {"name": "From", "value": "hr@acme.test"},
                {"name": "X-Other", "value": "ignored"},
            ],
        },
    }

    text = email_to_text(email)

    assert text.splitlines()[:2] == ["Subject: Reminder", "From: hr@acme.test"]
    assert text.endswith("Quick reminder about Friday")
    assert "X-Other" not in text


def test_needs_refresh_window():
    now = datetime(2026, 1, 1, 12, 0, 0)
    fresh = MailAccount(access_token="t", expires_at=now + timedelta(minutes=30))
    almost = MailAccount(access_token="t", expires_at=now + timedelta(minutes=2))
    unknown = MailAccount(access_token="t", expires_at=None)

    assert needs_refresh(fresh, now) is False
    assert needs_refresh(almost, now) is True
    assert needs_refresh(unknown, now) is True


async def test_fetch_without_connected_account_is_auth_error(session_factory, user):
    source = GmailMailSource(session_factory=session_factory)

    with pytest.raises(MailAuthError):
        await source.fetch(user.id, 10, True)


async def test_fetch_expired_without_refresh_token_is_auth_error(db_session, session_factory, user):
    _account(db_session, user, refresh_token=None, expires_at=datetime.utcnow() - timedelta(hours=1))
    source = GmailMailSource(session_factory=session_factory)

    with pytest.raises(MailAuthError):
        await source.fetch(user.id, 10, True)


async def test_fetch_passes_options_to_gmail(db_session, session_factory, user, monkeypatch):
    _account(db_session, user)
    seen = {}

    def fake_fetch(creds, max_count, only_unread):
        seen.update(token=creds.token, max_count=max_count, only_unread=only_unread)
        return [MailMessage(id="m1", raw_text="Subject: Hi")]

    monkeypatch.setattr(gmail_service, "fetch_messages_blocking", fake_fetch)
    source = GmailMailSource(session_factory=session_factory)

    messages = await source.fetch(user.id, 5, False)

    assert [m.id for m in messages] == ["m1"]
    assert seen == {"token": "access-1", "max_count": 5, "only_unread": False}


async def test_expired_token_is_refreshed_and_persisted(db_session, session_factory, user, monkeypatch):
    _account(db_session, user, expires_at=datetime.utcnow() - timedelta(minutes=1))
    new_expiry = datetime.utcnow() + timedelta(hours=1)

    def fake_refresh(self, request):
        self.token = "access-2"
        self.expiry = new_expiry

    monkeypatch.setattr(gmail_service.Credentials, "refresh", fake_refresh)
    monkeypatch.setattr(gmail_service, "fetch_messages_blocking", lambda creds, n, unread: [])
    source = GmailMailSource(session_factory=session_factory)

    assert await source.fetch(user.id, 10, True) == []

    db_session.expire_all()
    stored = db_session.execute(select(MailAccount).where(MailAccount.user_id == user.id)).scalar_one()
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-1"


@pytest.mark.parametrize(
    "error,expected",
    [
        (_http_error(401), MailAuthError),
        (_http_error(403), MailAuthError),
        (_http_error(404), MailFetchError),
        (ConnectionResetError("reset by peer"), MailFetchError),
    ],
)
async def test_fetch_errors_are_mapped(db_session, session_factory, user, monkeypatch, error, expected):
    _account(db_session, user)

    def broken(creds, max_count, only_unread):
        raise error

    monkeypatch.setattr(gmail_service, "fetch_messages_blocking", broken)
    source = GmailMailSource(session_factory=session_factory)

    with pytest.raises(expected):
        await source.fetch(user.id, 10, True)
