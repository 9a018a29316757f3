"""Entry point for the FastAPI-powered NeedleDrop backend."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any
from urllib.parse import quote, unquote

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from .config import Settings, get_settings
from .database import Database
from .errors import NeedleDropError, ValidationError
from .services.catalog_sync import CatalogSyncEngine
from .services.discogs import DiscogsClient
from .services.oauth_exchange import (
    HandshakeError,
    OAuthExchange,
    append_query,
    is_native_target,
)
from .services.play_ledger import PlayLedger
from .services.session import (
    HANDSHAKE_MAX_AGE,
    REDIRECT_TARGET_COOKIE,
    REQUEST_SECRET_COOKIE,
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    Identity,
    SessionResolver,
    encode_session_cookie,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RELEASE_CACHE_CONTROL = "public, max-age=604800"


def _build_lifespan(
    settings: Settings, transport: httpx.AsyncBaseTransport | None
):
    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        exit_stack = AsyncExitStack()
        client_kwargs: dict[str, Any] = {
            "base_url": str(settings.discogs_api_url),
            "timeout": httpx.Timeout(20.0, connect=10.0),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        discogs_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(**client_kwargs)
        )
        database = Database(settings.database_url)
        try:
            await database.ensure_schema()
        except Exception:
            await database.dispose()
            await exit_stack.aclose()
            raise

        discogs = DiscogsClient(settings, discogs_http_client)
        fastapi_app.state.database = database
        fastapi_app.state.session_resolver = SessionResolver(settings.session_secret)
        fastapi_app.state.oauth_exchange = OAuthExchange(settings, discogs)
        fastapi_app.state.catalog_sync = CatalogSyncEngine(
            settings, discogs, database.session_factory
        )
        fastapi_app.state.play_ledger = PlayLedger(database.session_factory)

        try:
            yield
        finally:  # pragma: no cover - teardown path exercised at runtime
            await database.dispose()
            await exit_stack.aclose()

    return lifespan


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved_settings = settings or get_settings()
    fastapi_app = FastAPI(
        title=resolved_settings.app_name,
        description="Discogs collection tracking with a personal play log",
        version="1.0.0",
        lifespan=_build_lifespan(resolved_settings, transport),
    )
    fastapi_app.state.settings = resolved_settings

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
    )

    @fastapi_app.exception_handler(NeedleDropError)
    async def _needledrop_error_handler(
        _: Request, exc: NeedleDropError
    ) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    register_routes(fastapi_app, resolved_settings)
    return fastapi_app


def _state(fastapi_app: FastAPI, name: str) -> Any:
    component = getattr(fastapi_app.state, name, None)
    if component is None:
        raise RuntimeError(f"{name} not initialised")
    return component


def register_routes(fastapi_app: FastAPI, settings: Settings) -> None:
    def _resolver() -> SessionResolver:
        return _state(fastapi_app, "session_resolver")

    def _exchange() -> OAuthExchange:
        return _state(fastapi_app, "oauth_exchange")

    def _catalog() -> CatalogSyncEngine:
        return _state(fastapi_app, "catalog_sync")

    def _ledger() -> PlayLedger:
        return _state(fastapi_app, "play_ledger")

    def _identity(request: Request) -> Identity | None:
        return _resolver().resolve(request)

    def _owner(request: Request) -> str:
        return _catalog().owner_key(_identity(request))

    def _app_root(request: Request, **params: str) -> str:
        _, base = _resolve_external_base(request)
        root = f"{base}/"
        return append_query(root, **params) if params else root

    def _auth_error(request: Request, code: str) -> RedirectResponse:
        logger.info("Discogs sign-in failed: %s", code)
        response = RedirectResponse(_app_root(request, auth_error=code))
        _clear_handshake_cookies(response)
        return response

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/auth/provider/start")
    async def discogs_login(request: Request, redirect_to: str | None = None):
        exchange = _exchange()
        if not exchange.configured:
            return JSONResponse(
                {
                    "error": "discogs_credentials_missing",
                    "detail": (
                        "DISCOGS_CONSUMER_KEY and DISCOGS_CONSUMER_SECRET must be "
                        "configured on the server to enable sign in."
                    ),
                },
                status_code=503,
            )
        native_target = redirect_to if is_native_target(redirect_to) else None
        if native_target and not _resolver().can_issue_tokens:
            return JSONResponse(
                {
                    "error": "session_secret_missing",
                    "detail": "SESSION_SECRET must be configured for app sign in.",
                },
                status_code=503,
            )

        try:
            request_token = await exchange.start(_resolve_callback_url(request, settings))
        except HandshakeError as exc:
            return _auth_error(request, exc.code)

        secure = _is_secure(request)
        response = RedirectResponse(exchange.authorize_url(request_token))
        response.set_cookie(
            REQUEST_SECRET_COOKIE,
            request_token.secret,
            max_age=HANDSHAKE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=secure,
        )
        if native_target:
            response.set_cookie(
                REDIRECT_TARGET_COOKIE,
                quote(native_target, safe=""),
                max_age=HANDSHAKE_MAX_AGE,
                httponly=True,
                samesite="lax",
                secure=secure,
            )
        else:
            response.delete_cookie(REDIRECT_TARGET_COOKIE)
        return response

    @fastapi_app.get("/auth/provider/callback", name="discogs_oauth_callback")
    async def discogs_oauth_callback(
        request: Request,
        oauth_token: str | None = None,
        oauth_verifier: str | None = None,
        denied: str | None = None,
    ) -> RedirectResponse:
        if denied:
            return _auth_error(request, "provider_denied")
        try:
            identity = await _exchange().complete(
                oauth_token,
                oauth_verifier,
                request.cookies.get(REQUEST_SECRET_COOKIE),
            )
        except HandshakeError as exc:
            return _auth_error(request, exc.code)

        resolver = _resolver()
        target = unquote(request.cookies.get(REDIRECT_TARGET_COOKIE) or "")
        if is_native_target(target) and resolver.can_issue_tokens:
            response = RedirectResponse(
                append_query(target, token=resolver.issue_token(identity))
            )
        else:
            response = RedirectResponse(_app_root(request))
            response.set_cookie(
                SESSION_COOKIE,
                encode_session_cookie(identity),
                max_age=SESSION_MAX_AGE,
                httponly=True,
                samesite="lax",
                secure=_is_secure(request),
            )
        _clear_handshake_cookies(response)
        return response

    @fastapi_app.get("/auth/session")
    async def session_status(request: Request) -> dict[str, Any]:
        identity = _identity(request)
        if identity is None:
            return {"is_logged_in": False, "user": None}
        return {
            "is_logged_in": True,
            "username": identity.username,
            "avatar_url": identity.avatar_url,
            "user": {
                "id": identity.username,
                "username": identity.username,
                "avatar": identity.avatar_url or None,
            },
        }

    @fastapi_app.get("/auth/logout")
    async def logout(request: Request) -> RedirectResponse:
        response = RedirectResponse(_app_root(request))
        response.delete_cookie(SESSION_COOKIE)
        _clear_handshake_cookies(response)
        return response

    @fastapi_app.get("/catalog")
    async def list_catalog(request: Request) -> list[dict[str, Any]]:
        items = await _catalog().list_catalog(_owner(request))
        return [item.model_dump(mode="json") for item in items]

    @fastapi_app.get("/catalog/sync")
    async def sync_catalog(request: Request) -> list[dict[str, Any]]:
        items = await _catalog().sync(_identity(request))
        return [item.model_dump(mode="json") for item in items]

    @fastapi_app.get("/releases/{release_id}")
    async def release_detail(request: Request, release_id: str) -> JSONResponse:
        detail = await _catalog().fetch_release(release_id, _identity(request))
        return JSONResponse(
            detail.model_dump(mode="json"),
            headers={"Cache-Control": RELEASE_CACHE_CONTROL},
        )

    @fastapi_app.get("/plays")
    async def list_plays(request: Request) -> list[dict[str, Any]]:
        aggregates = await _ledger().list_aggregates(_owner(request))
        return [aggregate.model_dump(mode="json") for aggregate in aggregates]

    @fastapi_app.post("/plays")
    async def record_play(request: Request) -> dict[str, Any]:
        owner = _owner(request)
        payload = await _json_body(request)
        aggregate = await _ledger().record_play(owner, _external_id(payload))
        return aggregate.model_dump(mode="json")

    @fastapi_app.patch("/plays")
    async def set_play_count(request: Request) -> dict[str, Any]:
        owner = _owner(request)
        payload = await _json_body(request)
        aggregate = await _ledger().set_play_count(
            owner, _external_id(payload), payload.get("count")
        )
        return aggregate.model_dump(mode="json")


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _external_id(payload: dict[str, Any]) -> Any:
    if payload.get("external_id") is not None:
        return payload["external_id"]
    return payload.get("discogs_id")


def _clear_handshake_cookies(response: RedirectResponse) -> None:
    response.delete_cookie(REQUEST_SECRET_COOKIE)
    response.delete_cookie(REDIRECT_TARGET_COOKIE)


def _is_secure(request: Request) -> bool:
    scheme = _first_forwarded_value(request.headers.get("x-forwarded-proto"))
    return (scheme or request.url.scheme) == "https"


def _resolve_callback_url(request: Request, settings: Settings) -> str:
    if settings.discogs_callback_url:
        return str(settings.discogs_callback_url)

    _, base = _resolve_external_base(request)
    path = request.app.url_path_for("discogs_oauth_callback")
    return f"{base}{path}"


def _resolve_external_base(request: Request) -> tuple[str, str]:
    headers = request.headers
    scheme = _first_forwarded_value(headers.get("x-forwarded-proto")) or request.url.scheme

    host = _first_forwarded_value(headers.get("x-forwarded-host"))
    if not host:
        host_header = headers.get("host")
        host = _first_forwarded_value(host_header) if host_header else None
    if not host:
        host = request.url.netloc

    port = _first_forwarded_value(headers.get("x-forwarded-port"))
    if port and ":" not in host:
        default_port = "443" if scheme == "https" else "80"
        if port != default_port:
            host = f"{host}:{port}"

    origin = f"{scheme}://{host}".rstrip("/")

    prefix = (
        _first_forwarded_value(headers.get("x-forwarded-prefix"))
        or request.scope.get("root_path")
        or ""
    )
    if prefix and not prefix.startswith("/"):
        prefix = f"/{prefix}"
    prefix = prefix.rstrip("/")

    base = f"{origin}{prefix}" if prefix else origin
    return origin, base


def _first_forwarded_value(header_value: str | None) -> str | None:
    if not header_value:
        return None
    return header_value.split(",", 1)[0].strip()


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=_settings.server_host,
        port=_settings.server_port,
        reload=_settings.environment == "development",
    )
