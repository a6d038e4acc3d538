"""Tests for the Gmail HTTP client, Google OAuth and label management.

HTTP is mocked at the requests.Session level; no network access.
"""

from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from finmail.config_schema import GoogleConfig
from finmail.core.errors import AuthenticationError, GmailAPIError, RateLimitExceeded
from finmail.gmail.client import GmailClient
from finmail.gmail.labels import LabelManager
from finmail.gmail.oauth import GoogleOAuth

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _response(
    status_code: int = 200,
    payload: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    response.content = b"{}" if payload is not None else b""
    response.text = str(payload)
    return response


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch) -> None:
    monkeypatch.setattr("finmail.gmail.client.time.sleep", lambda seconds: None)


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def oauth() -> MagicMock:
    return MagicMock(spec=GoogleOAuth)


def _client(session: MagicMock, oauth: Any = None, refresh_token: str | None = "refresh") -> GmailClient:
    client = GmailClient("access", refresh_token=refresh_token, oauth=oauth, session=session)
    client._rate_bucket = MagicMock()
    return client


# ---------------------------------------------------------------------------
# GmailClient
# ---------------------------------------------------------------------------


class TestGmailClient:
    def test_requires_access_token(self) -> None:
        with pytest.raises(AuthenticationError):
            GmailClient("")

    def test_get_sends_bearer_token(self, session: MagicMock) -> None:
        session.request.return_value = _response(payload={"emailAddress": "me@example.com"})
        client = _client(session)

        result = client.get("/profile")

        assert result == {"emailAddress": "me@example.com"}
        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://gmail.googleapis.com/gmail/v1/users/me/profile"
        assert kwargs["headers"]["Authorization"] == "Bearer access"

    def test_empty_body_returns_empty_dict(self, session: MagicMock) -> None:
        session.request.return_value = _response(status_code=204)
        assert _client(session).post("/messages/1/modify") == {}

    def test_retries_server_errors(self, session: MagicMock) -> None:
        session.request.side_effect = [_response(503), _response(500), _response(payload={"ok": 1})]
        assert _client(session).get("/labels") == {"ok": 1}
        assert session.request.call_count == 3

    def test_gives_up_after_max_retries(self, session: MagicMock) -> None:
        session.request.return_value = _response(500, {"error": {"message": "backend"}})
        with pytest.raises(GmailAPIError) as exc_info:
            _client(session).get("/labels")
        assert exc_info.value.status_code == 500
        assert session.request.call_count == 4

    def test_rate_limit_exhausted_raises(self, session: MagicMock) -> None:
        session.request.return_value = _response(429, {}, headers={"Retry-After": "1"})
        with pytest.raises(RateLimitExceeded):
            _client(session).get("/messages")

    def test_not_found_is_not_retried(self, session: MagicMock) -> None:
        session.request.return_value = _response(
            404,
            {"error": {"message": "Not Found", "errors": [{"reason": "notFound"}]}},
        )
        with pytest.raises(GmailAPIError) as exc_info:
            _client(session).get("/messages/gone")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_reason == "notFound"
        assert session.request.call_count == 1

    def test_connection_errors_retried_then_raised(self, session: MagicMock) -> None:
        session.request.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(GmailAPIError, match="internet connection"):
            _client(session).get("/labels")

    def test_401_refreshes_token_once(self, session: MagicMock, oauth: MagicMock) -> None:
        oauth.refresh_access_token.return_value = {"access_token": "fresh"}
        session.request.side_effect = [_response(401), _response(payload={"labels": []})]
        client = _client(session, oauth=oauth)

        assert client.get("/labels") == {"labels": []}
        assert client.access_token == "fresh"
        assert client.token_refreshed is True
        retried_headers = session.request.call_args.kwargs["headers"]
        assert retried_headers["Authorization"] == "Bearer fresh"

    def test_401_without_refresh_token_raises(self, session: MagicMock, oauth: MagicMock) -> None:
        session.request.return_value = _response(401, {"error": {"message": "Invalid Credentials"}})
        client = _client(session, oauth=oauth, refresh_token=None)

        with pytest.raises(GmailAPIError) as exc_info:
            client.get("/labels")
        assert exc_info.value.status_code == 401
        oauth.refresh_access_token.assert_not_called()

    def test_paginate_follows_tokens_and_truncates(self, session: MagicMock) -> None:
        session.request.side_effect = [
            _response(payload={"messages": [{"id": "1"}, {"id": "2"}], "nextPageToken": "p2"}),
            _response(payload={"messages": [{"id": "3"}, {"id": "4"}], "nextPageToken": "p3"}),
        ]
        items = _client(session).paginate("/messages", "messages", params={"q": "bill"}, max_items=3)

        assert [i["id"] for i in items] == ["1", "2", "3"]
        second_params = session.request.call_args_list[1].kwargs["params"]
        assert second_params["pageToken"] == "p2"
        assert second_params["q"] == "bill"
        assert second_params["maxResults"] == 3


# ---------------------------------------------------------------------------
# LabelManager
# ---------------------------------------------------------------------------


class TestLabelManager:
    def test_list_labels(self) -> None:
        client = MagicMock()
        client.get.return_value = {"labels": [{"id": "Label_1", "name": "Taxes"}]}
        assert LabelManager(client).list_labels() == [{"id": "Label_1", "name": "Taxes"}]

    def test_create_label_with_color(self) -> None:
        client = MagicMock()
        client.post.return_value = {"id": "Label_9", "name": "Receipts"}

        label = LabelManager(client).create_label("Receipts", "#16a765")

        assert label["id"] == "Label_9"
        body = client.post.call_args.kwargs["json"]
        assert body["labelListVisibility"] == "labelShow"
        assert body["color"]["backgroundColor"] == "#16a765"


# ---------------------------------------------------------------------------
# GoogleOAuth
# ---------------------------------------------------------------------------


@pytest.fixture
def google_oauth(session: MagicMock, monkeypatch) -> GoogleOAuth:
    monkeypatch.setattr("finmail.gmail.oauth.time.sleep", lambda seconds: None)
    client = GoogleOAuth(
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://localhost:8080/auth/callback",
        scopes=["https://www.googleapis.com/auth/gmail.readonly"],
        session=session,
    )
    client._rate_bucket = MagicMock()
    return client


class TestGoogleOAuth:
    def test_authorization_url_requests_offline_access(self, google_oauth: GoogleOAuth) -> None:
        url = google_oauth.get_authorization_url(state="xyz")
        query = parse_qs(urlparse(url).query)

        assert query["client_id"] == ["cid"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == ["xyz"]

    def test_authorization_url_needs_client_id(self, session: MagicMock) -> None:
        oauth = GoogleOAuth("", None, "http://localhost", [], session=session)
        with pytest.raises(AuthenticationError, match="client_id"):
            oauth.get_authorization_url()

    def test_exchange_code(self, google_oauth: GoogleOAuth, session: MagicMock) -> None:
        session.post.return_value = _response(payload={"access_token": "a", "refresh_token": "r"})

        tokens = google_oauth.exchange_code("code-1")

        assert tokens["refresh_token"] == "r"
        data = session.post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "code-1"

    def test_rejected_code_raises(self, google_oauth: GoogleOAuth, session: MagicMock) -> None:
        session.post.return_value = _response(
            400, {"error": "invalid_grant", "error_description": "Bad Request"}
        )
        with pytest.raises(AuthenticationError, match="Bad Request"):
            google_oauth.exchange_code("expired")
        assert session.post.call_count == 1

    def test_token_endpoint_outage_retried(self, google_oauth: GoogleOAuth, session: MagicMock) -> None:
        session.post.side_effect = [_response(503), _response(payload={"access_token": "a"})]
        assert google_oauth.refresh_access_token("r")["access_token"] == "a"

    def test_missing_secret_rejected(self, session: MagicMock) -> None:
        oauth = GoogleOAuth("cid", None, "http://localhost", [], session=session)
        with pytest.raises(AuthenticationError, match="GOOGLE_CLIENT_SECRET"):
            oauth.exchange_code("code")

    def test_user_info(self, google_oauth: GoogleOAuth, session: MagicMock) -> None:
        session.get.return_value = _response(payload={"id": "123", "email": "me@example.com"})
        assert google_oauth.get_user_info("a")["email"] == "me@example.com"

        session.get.return_value = _response(401, {})
        with pytest.raises(AuthenticationError):
            google_oauth.get_user_info("bad")

    def test_from_config_reads_secret_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "env-secret")
        oauth = GoogleOAuth.from_config(GoogleConfig(client_id="cid"))
        assert oauth.client_secret == "env-secret"
        assert oauth.client_id == "cid"
