from aiohttp.client import ClientSession
from flask import current_app, g, request
from flask.sessions import SessionMixin
from werkzeug.wrappers import Response

from .shopify.cookies import PendingCookies
from .shopify.session import SessionOrchestrator, SingleFlight
from .shopify.storage import (
    CookieTokenStorage,
    EphemeralAuthStore,
    LocalTokenStorage,
    TokenStorage,
    select_token_storage,
)
from .shopify.types import (
    DEFAULT_API_VERSION,
    DEFAULT_REFRESH_BUFFER_SECONDS,
    DEFAULT_SCOPE,
    ShopifyAuthConfig,
    TokenSet,
)

# refreshes shared by every request of this process, keyed by refresh token
REFRESH_KEEP_SECONDS = 30
refreshes: SingleFlight[TokenSet | None] = SingleFlight(keep_seconds=REFRESH_KEEP_SECONDS)


def auth_config() -> ShopifyAuthConfig:
    config = current_app.config
    redirect_uri = config.get("SHOPIFY_REDIRECT_URI") or f"{app_url()}/auth/callback"
    return ShopifyAuthConfig(
        shop_id=config["SHOPIFY_SHOP_ID"],
        client_id=config["SHOPIFY_CLIENT_ID"],
        redirect_uri=redirect_uri,
        scope=config.get("SHOPIFY_SCOPE") or DEFAULT_SCOPE,
        locale=config.get("SHOPIFY_LOCALE"),
        api_version=config.get("SHOPIFY_API_VERSION") or DEFAULT_API_VERSION,
        origin=config.get("SHOPIFY_ORIGIN"),
        verify_id_token=bool(config.get("SHOPIFY_VERIFY_ID_TOKEN", False)),
        refresh_buffer_seconds=int(
            config.get("SHOPIFY_REFRESH_BUFFER_SECONDS", DEFAULT_REFRESH_BUFFER_SECONDS)
        ),
    )


def app_url() -> str:
    configured: str | None = current_app.config.get("APP_URL")
    if configured:
        return configured.rstrip("/")
    return request.url_root.rstrip("/")


# read per call, never cached at import
def use_secure_cookies() -> bool:
    config = current_app.config
    if "USE_SECURE_COOKIES" in config:
        return bool(config["USE_SECURE_COOKIES"])
    return (config.get("APP_ENV") or config.get("ENV")) == "production"


# Storage


def pending_cookies() -> PendingCookies:
    pending: PendingCookies | None = g.get("pending_cookies", None)
    if pending is None:
        pending = g.pending_cookies = PendingCookies()
    return pending


def apply_pending_cookies(response: Response) -> Response:
    pending: PendingCookies | None = g.get("pending_cookies", None)
    if pending is not None:
        pending.apply(response)
    return response


def cookie_token_storage() -> CookieTokenStorage:
    return CookieTokenStorage(request.cookies, pending_cookies())


def local_token_storage(session: SessionMixin) -> LocalTokenStorage:
    return LocalTokenStorage(session)


def token_storages(session: SessionMixin) -> tuple[TokenStorage, list[TokenStorage]]:
    """The backend for this operation, and the other one."""

    cookie = cookie_token_storage()
    local = local_token_storage(session)
    active = select_token_storage(use_secure_cookies(), cookie, local)
    others: list[TokenStorage] = [local if active is cookie else cookie]
    return active, others


def ephemeral_store(session: SessionMixin) -> EphemeralAuthStore:
    return EphemeralAuthStore(session)


def get_orchestrator(client: ClientSession, session: SessionMixin) -> SessionOrchestrator:
    storage, others = token_storages(session)
    return SessionOrchestrator(
        client,
        auth_config(),
        storage,
        ephemeral_store(session),
        other_storages=others,
        refreshes=refreshes,
    )
