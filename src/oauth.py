from typing import Any

from flask import Blueprint, current_app, jsonify, redirect, request, session, url_for

from .auth import (
    app_url,
    apply_pending_cookies,
    auth_config,
    cookie_token_storage,
    get_orchestrator,
)
from .security import hardened_http, is_safe_redirect
from .shopify.errors import ShopifyAuthError, TokenNetworkError, TokenRequestError
from .shopify.tokens import exchange_code, refresh_token_request
from .shopify.types import TokenSet, now_ms

oauth = Blueprint("oauth", __name__)
oauth.after_app_request(apply_pending_cookies)

API_PREFIX = "/api/auth/shopify"


# Browser flow


@oauth.get("/auth/login")
async def oauth_login():
    return_to = request.args.get("return_to")
    if return_to and not is_safe_redirect(return_to, request.host):
        current_app.logger.warning(f"ignoring unsafe return_to={return_to}")
        return_to = None
    prompt = "none" if request.args.get("prompt") == "none" else None
    locale = request.args.get("locale")

    async with hardened_http.get_session() as client:
        orchestrator = get_orchestrator(client, session)
        url = orchestrator.begin_login(prompt=prompt, locale=locale, return_to=return_to)

    current_app.logger.debug("redirecting to provider authorize endpoint")
    return redirect(url, 303)


@oauth.get("/auth/callback")
async def oauth_callback():
    async with hardened_http.get_session() as client:
        orchestrator = get_orchestrator(client, session)
        result = await orchestrator.complete_callback(request.args)

    if result.error is not None:
        current_app.logger.warning(f"login failed: {result.error.code}")
        return redirect(url_for("page_login", error=result.error.code), 303)

    current_app.logger.debug("login completed")
    return redirect(result.return_to or "/", 303)


@oauth.route("/auth/logout", methods=["GET", "POST"])
async def oauth_logout():
    post_logout_redirect_uri = f"{app_url()}/?shopify_logout=true"
    async with hardened_http.get_session() as client:
        orchestrator = get_orchestrator(client, session)
        logout_url = await orchestrator.logout(post_logout_redirect_uri)
    return redirect(logout_url, 303)


@oauth.get("/api/auth/session")
async def oauth_session():
    try:
        async with hardened_http.get_session() as client:
            orchestrator = get_orchestrator(client, session)
            customer = await orchestrator.current_customer()
    except TokenNetworkError as exception:
        current_app.logger.warning(f"session check failed: {exception}")
        return _error(exception.code, exception.user_message, 503)

    if customer is None:
        return jsonify({"authenticated": False, "customer": None})
    return jsonify({"authenticated": True, "customer": customer._asdict()})


# Server-mediated cookie API


@oauth.post(f"{API_PREFIX}/token-exchange")
async def token_exchange():
    body: dict[str, Any] = request.get_json(silent=True) or {}
    code = body.get("code")
    code_verifier = body.get("codeVerifier")
    if not code or not code_verifier:
        return _error("missing_parameters", "code and codeVerifier are required", 400)

    config = auth_config()
    if body.get("redirectUri"):
        config = config._replace(redirect_uri=body["redirectUri"])

    try:
        async with hardened_http.get_session() as client:
            response = await exchange_code(client, config, code, code_verifier)
    except ShopifyAuthError as exception:
        return _token_error(exception)

    tokens = TokenSet.from_response(response, now_ms())
    if body.get("useCookies"):
        await cookie_token_storage().write(tokens)
        return jsonify(_token_metadata(tokens))
    return jsonify(tokens.to_json())


@oauth.post(f"{API_PREFIX}/refresh")
async def token_refresh():
    body: dict[str, Any] = request.get_json(silent=True) or {}
    use_cookies = bool(body.get("useCookies"))
    storage = cookie_token_storage()
    previous = await storage.read() if use_cookies else None

    refresh_token = body.get("refreshToken") or (previous and previous.refresh_token)
    if not refresh_token:
        return _error("missing_parameters", "refreshToken is required", 400)

    try:
        async with hardened_http.get_session() as client:
            response = await refresh_token_request(client, auth_config(), refresh_token)
    except ShopifyAuthError as exception:
        if use_cookies and isinstance(exception, TokenRequestError):
            await storage.clear()
        return _token_error(exception)

    tokens = TokenSet.from_response(response, now_ms(), previous=previous)
    if tokens.refresh_token is None:
        tokens = tokens._replace(refresh_token=refresh_token)
    if use_cookies:
        await storage.write(tokens)
        return jsonify(_token_metadata(tokens))
    return jsonify(tokens.to_json())


@oauth.get(f"{API_PREFIX}/get-tokens")
async def get_tokens():
    tokens = await cookie_token_storage().read()
    if tokens is None:
        return _error("no_tokens", "No authentication tokens found", 401)

    buffer = auth_config().refresh_buffer_seconds
    now = now_ms()
    return jsonify(
        tokens.to_json()
        | {
            "isExpired": tokens.is_expired(buffer, now),
            "expiresAt": tokens.expires_at,
            "timeUntilExpiration": max(0, tokens.expires_at - now),
        }
    )


@oauth.post(f"{API_PREFIX}/store-tokens")
async def store_tokens():
    body = request.get_json(silent=True)
    try:
        tokens = TokenSet.from_json(body)
    except (KeyError, TypeError, ValueError):
        return _error("invalid_tokens", "A complete token set is required", 400)

    await cookie_token_storage().write(tokens)
    return jsonify({"success": True})


@oauth.post(f"{API_PREFIX}/clear-tokens")
async def clear_tokens():
    await cookie_token_storage().clear()
    return jsonify({"success": True})


def _token_metadata(tokens: TokenSet) -> dict[str, Any]:
    return {
        "tokenType": tokens.token_type,
        "expiresIn": tokens.expires_in,
        "issuedAt": tokens.issued_at,
        "scope": tokens.scope,
        "hasRefreshToken": tokens.refresh_token is not None,
        "hasIdToken": tokens.id_token is not None,
    }


def _token_error(exception: ShopifyAuthError):
    current_app.logger.warning(f"token request failed: {exception.code} {exception}")
    if isinstance(exception, TokenNetworkError):
        return _error(exception.code, exception.user_message, 504)
    if isinstance(exception, TokenRequestError) and exception.status >= 400:
        return _error(exception.code, exception.user_message, exception.status)
    return _error(exception.code, exception.user_message, 502)


def _error(code: str, message: str, status: int):
    return jsonify({"error": code, "message": message}), status
