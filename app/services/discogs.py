"""Utilities for communicating with the Discogs API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, quote

import httpx
from oauthlib import oauth1

from ..config import Settings
from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OAuthToken:
    """A token/secret pair: request token during login, access token after."""

    key: str
    secret: str


def parse_token_body(body: str) -> OAuthToken | None:
    """Parse an ``oauth_token=...&oauth_token_secret=...`` response body."""

    values = parse_qs(body or "", keep_blank_values=False)
    token = (values.get("oauth_token") or [""])[0]
    secret = (values.get("oauth_token_secret") or [""])[0]
    if not (token and secret):
        return None
    return OAuthToken(key=token, secret=secret)


class DiscogsClient:
    """Thin wrapper around the Discogs HTTP API."""

    _REQUEST_TOKEN_PATH = "/oauth/request_token"
    _ACCESS_TOKEN_PATH = "/oauth/access_token"
    _IDENTITY_PATH = "/oauth/identity"
    _COLLECTION_PATH = "/users/{username}/collection/folders/0/releases"
    _RELEASE_PATH = "/releases/{release_id}"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def can_sign(self) -> bool:
        return self._settings.has_consumer_credentials

    def _url(self, path: str, params: dict[str, Any] | None = None) -> str:
        url = self._client.base_url.join(path.lstrip("/"))
        if params:
            url = url.copy_merge_params(params)
        return str(url)

    def _oauth_headers(
        self,
        method: str,
        url: str,
        *,
        token: OAuthToken | None = None,
        callback_uri: str | None = None,
        verifier: str | None = None,
    ) -> dict[str, str]:
        """Return an HMAC-SHA1 ``Authorization: OAuth`` header for ``url``.

        ``url`` must already carry its query string so the parameters are signed.
        """

        if not self.can_sign:
            raise RuntimeError("Discogs consumer key and secret are not configured")
        client = oauth1.Client(
            self._settings.discogs_consumer_key,
            client_secret=self._settings.discogs_consumer_secret,
            resource_owner_key=token.key if token else None,
            resource_owner_secret=token.secret if token else None,
            callback_uri=callback_uri,
            verifier=verifier,
        )
        _, headers, _ = client.sign(url, http_method=method)
        return {"Authorization": headers["Authorization"]}

    def _headers(
        self, method: str, url: str, *, access_token: OAuthToken | None = None
    ) -> dict[str, str]:
        """Pick the strongest credential available for a data request."""

        headers = {"User-Agent": self._settings.user_agent}
        if access_token is not None and self.can_sign:
            headers.update(self._oauth_headers(method, url, token=access_token))
        elif self._settings.discogs_token:
            headers["Authorization"] = f"Discogs token={self._settings.discogs_token}"
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        *,
        step: str,
        headers: dict[str, str],
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Discogs %s request failed: %s", step, exc.__class__.__name__)
            raise ExternalServiceError(
                f"Unable to reach Discogs during {step}"
            ) from exc
        if response.status_code >= 400:
            logger.warning("Discogs %s returned HTTP %s", step, response.status_code)
            raise ExternalServiceError(
                f"Discogs rejected the {step} request",
                status_code=response.status_code,
            )
        return response

    async def request_token(self, callback_url: str) -> OAuthToken | None:
        """Obtain a temporary request token bound to ``callback_url``."""

        url = self._url(self._REQUEST_TOKEN_PATH)
        headers = {"User-Agent": self._settings.user_agent}
        headers.update(self._oauth_headers("POST", url, callback_uri=callback_url))
        response = await self._send("POST", url, step="request_token", headers=headers)
        return parse_token_body(response.text)

    async def access_token(
        self, request_token: OAuthToken, verifier: str
    ) -> OAuthToken | None:
        """Exchange an authorised request token for long-lived access credentials."""

        url = self._url(self._ACCESS_TOKEN_PATH)
        headers = {"User-Agent": self._settings.user_agent}
        headers.update(
            self._oauth_headers("POST", url, token=request_token, verifier=verifier)
        )
        response = await self._send("POST", url, step="access_token", headers=headers)
        return parse_token_body(response.text)

    async def identity(self, access_token: OAuthToken) -> dict[str, Any]:
        """Return the ``/oauth/identity`` document for the token owner."""

        url = self._url(self._IDENTITY_PATH)
        headers = {"User-Agent": self._settings.user_agent}
        headers.update(self._oauth_headers("GET", url, token=access_token))
        response = await self._send("GET", url, step="identity", headers=headers)
        return _json_object(response, step="identity")

    async def fetch_collection(
        self,
        username: str,
        *,
        access_token: OAuthToken | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of the user's collection, newest additions first.

        Any failing page aborts the whole fetch with that page's status code.
        """

        path = self._COLLECTION_PATH.format(username=quote(username, safe=""))
        collected: list[dict[str, Any]] = []
        page = 1
        total_pages = 1

        while page <= total_pages:
            url = self._url(
                path,
                {
                    "per_page": str(self._settings.sync_page_size),
                    "page": str(page),
                    "sort": "added",
                    "sort_order": "desc",
                },
            )
            response = await self._send(
                "GET",
                url,
                step=f"collection page {page}",
                headers=self._headers("GET", url, access_token=access_token),
            )
            data = _json_object(response, step=f"collection page {page}")
            releases = data.get("releases")
            pagination = data.get("pagination")
            if not isinstance(releases, list) or not isinstance(pagination, dict):
                logger.warning("Unexpected Discogs collection envelope on page %s", page)
                raise ExternalServiceError("Discogs returned an unexpected collection page")
            collected.extend(entry for entry in releases if isinstance(entry, dict))
            try:
                total_pages = int(pagination.get("pages") or 0)
            except (TypeError, ValueError):
                total_pages = 0
            page += 1

        logger.info(
            "Fetched %s collection releases for %s across %s page(s)",
            len(collected),
            username,
            page - 1,
        )
        return collected

    async def fetch_release(
        self,
        release_id: str,
        *,
        access_token: OAuthToken | None = None,
    ) -> dict[str, Any]:
        """Fetch the full release document used by the detail view."""

        url = self._url(self._RELEASE_PATH.format(release_id=quote(release_id, safe="")))
        response = await self._send(
            "GET",
            url,
            step="release",
            headers=self._headers("GET", url, access_token=access_token),
        )
        return _json_object(response, step="release")


def _json_object(response: httpx.Response, *, step: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        logger.warning("Unexpected non-JSON Discogs response for %s", step)
        raise ExternalServiceError(f"Discogs returned invalid JSON for {step}") from exc
    if not isinstance(data, dict):
        raise ExternalServiceError(f"Discogs returned an unexpected {step} payload")
    return data
