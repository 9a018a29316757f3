"""Three-legged OAuth 1.0a sign-in against Discogs."""

from __future__ import annotations

import logging
from urllib.parse import urlencode, urlsplit

from ..config import Settings
from ..errors import ExternalServiceError
from .discogs import DiscogsClient, OAuthToken
from .session import Identity

logger = logging.getLogger(__name__)


class HandshakeError(Exception):
    """A sign-in step failed; ``code`` is reported back as ``auth_error``."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


def is_native_target(target: str | None) -> bool:
    """Return whether ``target`` is a custom-scheme URI owned by a native app.

    The scheme must be followed by ``://``; bare ``host:port/path`` values
    parse with the host as their scheme and are rejected.
    """

    if not target:
        return False
    target = target.strip()
    prefix, separator, _ = target.partition("://")
    if not separator:
        return False
    try:
        scheme = urlsplit(target).scheme.lower()
    except ValueError:
        return False
    return bool(scheme) and scheme == prefix.lower() and scheme not in {"http", "https"}


def append_query(target: str, **params: str) -> str:
    separator = "&" if "?" in target else "?"
    return f"{target}{separator}{urlencode(params)}"


class OAuthExchange:
    """Runs the request-token, access-token and identity steps."""

    def __init__(self, settings: Settings, discogs: DiscogsClient):
        self._settings = settings
        self._discogs = discogs

    @property
    def configured(self) -> bool:
        return self._discogs.can_sign

    def authorize_url(self, request_token: OAuthToken) -> str:
        return append_query(
            str(self._settings.discogs_authorize_url),
            oauth_token=request_token.key,
        )

    async def start(self, callback_url: str) -> OAuthToken:
        """Fetch a request token whose secret must survive the provider round trip."""

        try:
            request_token = await self._discogs.request_token(callback_url)
        except ExternalServiceError as exc:
            raise HandshakeError("request_token", exc.message) from exc
        if request_token is None:
            raise HandshakeError(
                "request_token", "Discogs did not return a request token"
            )
        return request_token

    async def complete(
        self,
        oauth_token: str | None,
        oauth_verifier: str | None,
        request_secret: str | None,
    ) -> Identity:
        """Trade the verifier for access credentials and look up the account."""

        if not (oauth_token and oauth_verifier):
            raise HandshakeError(
                "missing_params", "Discogs did not return a token and verifier"
            )
        if not request_secret:
            raise HandshakeError(
                "session_expired", "The sign-in session expired; please try again"
            )

        request_token = OAuthToken(key=oauth_token, secret=request_secret)
        try:
            access = await self._discogs.access_token(request_token, oauth_verifier)
        except ExternalServiceError as exc:
            raise HandshakeError("token_exchange", exc.message) from exc
        if access is None:
            raise HandshakeError(
                "missing_access_token", "Discogs did not return access credentials"
            )

        username, avatar_url = await self._lookup_identity(access)
        logger.info("Discogs sign-in completed for %s", username or "<unknown user>")
        return Identity(
            username=username,
            avatar_url=avatar_url,
            access_token=access.key,
            access_token_secret=access.secret,
        )

    async def _lookup_identity(self, access: OAuthToken) -> tuple[str, str]:
        # Identity metadata is optional; failures fall back to empty strings.
        try:
            document = await self._discogs.identity(access)
        except ExternalServiceError as exc:
            logger.warning("Discogs identity lookup failed: %s", exc.message)
            return "", ""
        username = document.get("username")
        avatar_url = document.get("avatar_url")
        return (
            username if isinstance(username, str) else "",
            avatar_url if isinstance(avatar_url, str) else "",
        )
