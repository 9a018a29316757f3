"""Identity carriers: signed bearer tokens for apps, a cookie for browsers."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Union

from starlette.requests import HTTPConnection

from ..errors import AuthenticationError
from ..utils import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

SESSION_COOKIE = "discogs_session"
REQUEST_SECRET_COOKIE = "discogs_request_secret"
REDIRECT_TARGET_COOKIE = "discogs_redirect_to"

SESSION_MAX_AGE = 60 * 60 * 24 * 30
HANDSHAKE_MAX_AGE = 600


@dataclass(frozen=True, slots=True)
class Identity:
    """The Discogs account behind the current request."""

    username: str
    avatar_url: str
    access_token: str
    access_token_secret: str


@dataclass(frozen=True, slots=True)
class Valid:
    identity: Identity
    issued_at: int | None = None


@dataclass(frozen=True, slots=True)
class Invalid:
    reason: str


TokenVerification = Union[Valid, Invalid]


def _sign(secret: str, payload: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), payload.encode("ascii"), hashlib.sha256
    ).digest()
    return b64url_encode(digest)


def issue_bearer_token(
    identity: Identity, *, secret: str | None, issued_at: int | None = None
) -> str:
    """Return ``base64url(json).base64url(hmac_sha256)`` for native clients."""

    if not secret:
        raise ValueError("A session secret is required to issue bearer tokens")
    claims = {
        "u": identity.username,
        "a": identity.avatar_url,
        "t": identity.access_token,
        "s": identity.access_token_secret,
        "iat": issued_at if issued_at is not None else int(time.time()),
    }
    payload = b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    return f"{payload}.{_sign(secret, payload)}"


def verify_bearer_token(token: str, *, secret: str | None) -> TokenVerification:
    """Check a bearer token's signature and claims without raising.

    ``iat`` is reported back but not enforced.
    """

    if not secret:
        return Invalid("bearer tokens are disabled")
    payload, dot, signature = (token or "").strip().rpartition(".")
    if not dot or not payload:
        return Invalid("malformed token")
    try:
        expected = _sign(secret, payload)
    except UnicodeEncodeError:
        return Invalid("malformed token")
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
        return Invalid("signature mismatch")

    try:
        claims = json.loads(b64url_decode(payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return Invalid("undecodable payload")
    if not isinstance(claims, dict):
        return Invalid("payload is not an object")

    username = _claim(claims, "u")
    access_token = _claim(claims, "t")
    access_token_secret = _claim(claims, "s")
    if not (username and access_token and access_token_secret):
        return Invalid("missing claims")

    issued_at = claims.get("iat")
    return Valid(
        identity=Identity(
            username=username,
            avatar_url=_claim(claims, "a"),
            access_token=access_token,
            access_token_secret=access_token_secret,
        ),
        issued_at=issued_at if isinstance(issued_at, int) else None,
    )


def encode_session_cookie(identity: Identity) -> str:
    """Serialise ``identity`` into the browser session cookie value."""

    document = {
        "username": identity.username,
        "avatar_url": identity.avatar_url,
        "access_token": identity.access_token,
        "access_token_secret": identity.access_token_secret,
    }
    return b64url_encode(json.dumps(document, separators=(",", ":")).encode("utf-8"))


def decode_session_cookie(value: str | None) -> Identity | None:
    if not value:
        return None
    try:
        document = json.loads(b64url_decode(value).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(document, dict):
        return None
    username = _claim(document, "username")
    access_token = _claim(document, "access_token")
    access_token_secret = _claim(document, "access_token_secret")
    if not (username and access_token and access_token_secret):
        return None
    return Identity(
        username=username,
        avatar_url=_claim(document, "avatar_url"),
        access_token=access_token,
        access_token_secret=access_token_secret,
    )


def _claim(document: dict[str, Any], key: str) -> str:
    value = document.get(key)
    return value if isinstance(value, str) else ""


class SessionResolver:
    """Recovers the caller's identity from a bearer header or session cookie."""

    def __init__(self, secret: str | None):
        self._secret = secret

    @property
    def can_issue_tokens(self) -> bool:
        return bool(self._secret)

    def issue_token(self, identity: Identity) -> str:
        return issue_bearer_token(identity, secret=self._secret)

    def verify(self, token: str) -> TokenVerification:
        return verify_bearer_token(token, secret=self._secret)

    def resolve(self, connection: HTTPConnection) -> Identity | None:
        """Return the verified identity or ``None``; never raises.

        The bearer header is consulted first since native clients may have no
        cookie storage at all.
        """

        authorization = connection.headers.get("authorization") or ""
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            result = self.verify(credentials.strip())
            if isinstance(result, Valid):
                return result.identity
            logger.debug("Ignoring bearer token: %s", result.reason)

        return decode_session_cookie(connection.cookies.get(SESSION_COOKIE))


def resolve_owner_key(identity: Identity | None, fallback_owner: str | None) -> str:
    """Return the tenant key for ``identity``, or the configured single-tenant owner."""

    if identity is not None and identity.username:
        return identity.username
    if fallback_owner:
        return fallback_owner
    raise AuthenticationError("Sign in with Discogs to continue")
