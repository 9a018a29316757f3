"""Tests for the Discogs sign-in endpoints."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import create_app
from app.services.oauth_exchange import is_native_target
from app.services.session import (
    REDIRECT_TARGET_COOKIE,
    REQUEST_SECRET_COOKIE,
    SESSION_COOKIE,
    SessionResolver,
    Valid,
)

SECRET = "route-test-secret"


class FakeDiscogs:
    """Answers the OAuth endpoints the sign-in flow talks to."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.request_token_status = 200
        self.access_token_status = 200
        self.access_token_body = "oauth_token=acc&oauth_token_secret=acc-secret"
        self.identity_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/request_token":
            return httpx.Response(
                self.request_token_status,
                text="oauth_token=req&oauth_token_secret=req-secret&oauth_callback_confirmed=true",
            )
        if path == "/oauth/access_token":
            return httpx.Response(self.access_token_status, text=self.access_token_body)
        if path == "/oauth/identity":
            return httpx.Response(
                self.identity_status,
                json={
                    "id": 1,
                    "username": "alice",
                    "avatar_url": "https://img.discogs.com/alice.jpg",
                },
            )
        return httpx.Response(404, json={"message": "not found"})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@contextmanager
def _test_client(tmp_path, fake: FakeDiscogs, **overrides: Any):
    values: dict[str, Any] = {
        "DISCOGS_CONSUMER_KEY": "consumer-key",
        "DISCOGS_CONSUMER_SECRET": "consumer-secret",
        "SESSION_SECRET": SECRET,
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}",
    }
    values.update(overrides)
    settings = Settings(_env_file=None, **values)
    app = create_app(settings, transport=httpx.MockTransport(fake.handler))
    with TestClient(app) as client:
        yield client


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(url).query)


def test_start_redirects_to_discogs_with_request_token(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        response = client.get("/auth/provider/start", follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "https://www.discogs.com/oauth/authorize?oauth_token=req"
    assert response.cookies.get(REQUEST_SECRET_COOKIE) == "req-secret"
    authorization = fake.requests[0].headers["Authorization"]
    assert "oauth_callback=\"http%3A%2F%2Ftestserver%2Fauth%2Fprovider%2Fcallback\"" in authorization


def test_start_uses_forwarded_origin_for_callback(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        client.get(
            "/auth/provider/start",
            headers={
                "x-forwarded-proto": "https",
                "x-forwarded-host": "records.example",
                "x-forwarded-prefix": "/api",
            },
            follow_redirects=False,
        )

    authorization = fake.requests[0].headers["Authorization"]
    assert "https%3A%2F%2Frecords.example%2Fapi%2Fauth%2Fprovider%2Fcallback" in authorization


def test_browser_sign_in_sets_session_cookie(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        client.get("/auth/provider/start", follow_redirects=False)
        callback = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )
        session = client.get("/auth/session").json()

    assert callback.status_code == 307
    assert callback.headers["location"] == "http://testserver/"
    assert callback.cookies.get(SESSION_COOKIE)
    assert session["is_logged_in"] is True
    assert session["username"] == "alice"
    assert session["user"]["avatar"] == "https://img.discogs.com/alice.jpg"
    assert fake.paths() == ["/oauth/request_token", "/oauth/access_token", "/oauth/identity"]
    exchange = fake.requests[1].headers["Authorization"]
    assert 'oauth_token="req"' in exchange
    assert 'oauth_verifier="verifier"' in exchange


def test_native_sign_in_returns_bearer_token(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        start = client.get(
            "/auth/provider/start",
            params={"redirect_to": "needledrop://auth"},
            follow_redirects=False,
        )
        callback = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )
        location = callback.headers["location"]
        token = _query(location)["token"][0]
        session = client.get(
            "/auth/session", headers={"Authorization": f"Bearer {token}"}
        ).json()

    assert start.cookies.get(REDIRECT_TARGET_COOKIE)
    assert location.startswith("needledrop://auth?token=")
    assert SESSION_COOKIE not in callback.cookies
    verification = SessionResolver(SECRET).verify(token)
    assert isinstance(verification, Valid)
    assert verification.identity.username == "alice"
    assert verification.identity.access_token == "acc"
    assert session["username"] == "alice"


def test_web_redirect_targets_are_ignored(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        client.get(
            "/auth/provider/start",
            params={"redirect_to": "https://evil.example/steal"},
            follow_redirects=False,
        )
        callback = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert callback.headers["location"] == "http://testserver/"


def test_callback_without_params_reports_missing_params(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        response = client.get("/auth/provider/callback", follow_redirects=False)

    assert _query(response.headers["location"]) == {"auth_error": ["missing_params"]}
    assert fake.requests == []


def test_callback_without_request_secret_reports_session_expired(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        response = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert _query(response.headers["location"]) == {"auth_error": ["session_expired"]}


def test_rejected_exchange_reports_token_exchange(tmp_path) -> None:
    fake = FakeDiscogs()
    fake.access_token_status = 401
    with _test_client(tmp_path, fake) as client:
        client.get("/auth/provider/start", follow_redirects=False)
        response = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert _query(response.headers["location"]) == {"auth_error": ["token_exchange"]}
    assert SESSION_COOKIE not in response.cookies


def test_incomplete_exchange_reports_missing_access_token(tmp_path) -> None:
    fake = FakeDiscogs()
    fake.access_token_body = "oauth_token=acc"
    with _test_client(tmp_path, fake) as client:
        client.get("/auth/provider/start", follow_redirects=False)
        response = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert _query(response.headers["location"]) == {"auth_error": ["missing_access_token"]}


def test_denied_authorisation_is_reported(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        response = client.get(
            "/auth/provider/callback",
            params={"denied": "req"},
            follow_redirects=False,
        )

    assert _query(response.headers["location"]) == {"auth_error": ["provider_denied"]}


def test_failed_request_token_is_reported(tmp_path) -> None:
    fake = FakeDiscogs()
    fake.request_token_status = 500
    with _test_client(tmp_path, fake) as client:
        response = client.get("/auth/provider/start", follow_redirects=False)

    assert response.headers["location"] == "http://testserver/?auth_error=request_token"


def test_identity_lookup_failure_still_signs_in(tmp_path) -> None:
    fake = FakeDiscogs()
    fake.identity_status = 503
    with _test_client(tmp_path, fake) as client:
        client.get("/auth/provider/start", follow_redirects=False)
        response = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert response.headers["location"] == "http://testserver/"
    assert response.cookies.get(SESSION_COOKIE)


def test_start_without_consumer_credentials_is_unavailable(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(
        tmp_path, fake, DISCOGS_CONSUMER_KEY=None, DISCOGS_CONSUMER_SECRET=None
    ) as client:
        response = client.get("/auth/provider/start", follow_redirects=False)

    assert response.status_code == 503
    assert response.json()["error"] == "discogs_credentials_missing"
    assert fake.requests == []


def test_native_start_without_session_secret_is_unavailable(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake, SESSION_SECRET=None) as client:
        response = client.get(
            "/auth/provider/start",
            params={"redirect_to": "needledrop://auth"},
            follow_redirects=False,
        )

    assert response.status_code == 503
    assert response.json()["error"] == "session_secret_missing"


def test_logout_clears_session(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        client.get("/auth/provider/start", follow_redirects=False)
        client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )
        logout = client.get("/auth/logout", follow_redirects=False)
        session = client.get("/auth/session").json()

    assert logout.headers["location"] == "http://testserver/"
    assert session == {"is_logged_in": False, "user": None}


@pytest.mark.parametrize(
    ("target", "expected"),
    [
        ("needledrop://auth", True),
        (" NeedleDrop://auth/done ", True),
        ("localhost:3000/callback", False),
        ("mailto:someone@example.com?next=x://y", False),
        ("https://records.example/", False),
        ("http://localhost:3000/", False),
        ("", False),
        (None, False),
    ],
)
def test_native_targets_need_a_custom_scheme(target, expected) -> None:
    assert is_native_target(target) is expected


def test_host_port_redirect_target_falls_back_to_browser_flow(tmp_path) -> None:
    fake = FakeDiscogs()
    with _test_client(tmp_path, fake) as client:
        start = client.get(
            "/auth/provider/start",
            params={"redirect_to": "localhost:3000/callback"},
            follow_redirects=False,
        )
        callback = client.get(
            "/auth/provider/callback",
            params={"oauth_token": "req", "oauth_verifier": "verifier"},
            follow_redirects=False,
        )

    assert not start.cookies.get(REDIRECT_TARGET_COOKIE)
    assert callback.headers["location"] == "http://testserver/"
    assert callback.cookies.get(SESSION_COOKIE)
