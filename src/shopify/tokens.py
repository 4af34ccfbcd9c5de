import asyncio
import logging
from typing import Any, NamedTuple

from aiohttp import ClientError, ContentTypeError
from aiohttp.client import ClientSession

from . import token_endpoint
from .errors import TokenErrorKind, TokenNetworkError, TokenRequestError
from .types import ShopifyAuthConfig, TokenResponse

logger = logging.getLogger(__name__)

USER_AGENT = "ShopifyCustomerAuth/1.0"


class AuthorizationCodeGrant(NamedTuple):
    code: str
    code_verifier: str
    redirect_uri: str


class RefreshTokenGrant(NamedTuple):
    refresh_token: str


type TokenGrant = AuthorizationCodeGrant | RefreshTokenGrant


def token_request_body(client_id: str, grant: TokenGrant) -> dict[str, str]:
    match grant:
        case AuthorizationCodeGrant(code, code_verifier, redirect_uri):
            return {
                "grant_type": "authorization_code",
                "client_id": client_id,
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            }
        case RefreshTokenGrant(refresh_token):
            return {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "refresh_token": refresh_token,
            }


def token_request_headers(origin: str | None = None) -> dict[str, str]:
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
        # the provider answers 403 without a User-Agent
        "User-Agent": USER_AGENT,
    }
    # the provider answers 401 invalid_token when a browser client omits Origin
    if origin:
        headers["Origin"] = origin
    return headers


def classify_token_error(
    status: int,
    body: dict[str, Any],
    grant: TokenGrant,
) -> TokenRequestError:
    """Maps a failed token response onto a specific, actionable error."""

    error: str | None = body.get("error")
    description: str | None = body.get("error_description")
    is_refresh = isinstance(grant, RefreshTokenGrant)

    def make(kind: TokenErrorKind, message: str) -> TokenRequestError:
        return TokenRequestError(kind, message, status, error, description)

    if status == 301 and not is_refresh:
        return make(
            TokenErrorKind.INVALID_SHOP,
            "Invalid shop_id: ensure the correct shop_id is specified in the request",
        )
    if status == 400 and error == "invalid_grant":
        if is_refresh:
            return make(
                TokenErrorKind.INVALID_GRANT,
                "Invalid refresh token: the refresh token is invalid, expired, or revoked",
            )
        return make(
            TokenErrorKind.INVALID_GRANT,
            "Invalid grant: check that base64 padding is removed from the code "
            "challenge and that URL encoding is correct",
        )
    if status == 401 and error == "invalid_client":
        return make(
            TokenErrorKind.INVALID_CLIENT,
            "Invalid client: verify that the client_id is correct",
        )
    if status == 401 and error == "invalid_token" and not is_refresh:
        return make(
            TokenErrorKind.INVALID_ORIGIN,
            "Invalid token: ensure the Origin header is set and matches the "
            "JavaScript origins configured for the Customer Account API",
        )
    if status == 403 and not is_refresh:
        return make(
            TokenErrorKind.MISSING_USER_AGENT,
            "Access forbidden: ensure the User-Agent header is specified in the request",
        )

    return make(
        TokenErrorKind.OTHER,
        f"Token {_action(grant)} failed: {error} - {description or 'Unknown error'}",
    )


async def token_request(
    client: ClientSession,
    config: ShopifyAuthConfig,
    grant: TokenGrant,
) -> TokenResponse:
    """POSTs a grant to the token endpoint. Raises `TokenRequestError` on a
    non-2xx answer and `TokenNetworkError` when the endpoint can't be reached."""

    url = token_endpoint(config.shop_id)
    body = token_request_body(config.client_id, grant)
    headers = token_request_headers(config.origin)

    try:
        # redirects are not followed, a 301 means the shop id is wrong
        resp = await client.post(url, data=body, headers=headers, allow_redirects=False)
        if resp.status >= 300:
            respjson = await _error_body(resp)
            exception = classify_token_error(resp.status, respjson, grant)
            logger.warning(
                f"token request rejected: status={resp.status} error={exception.error}"
            )
            raise exception
        respjson = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError) as exception:
        logger.warning(f"token request failed: {exception!r}")
        raise TokenNetworkError(str(exception)) from exception
    except ValueError as exception:
        raise _malformed_response(resp.status, grant) from exception

    try:
        return TokenResponse.from_json(respjson)
    except (KeyError, TypeError, ValueError) as exception:
        raise _malformed_response(resp.status, grant) from exception


async def exchange_code(
    client: ClientSession,
    config: ShopifyAuthConfig,
    code: str,
    code_verifier: str,
) -> TokenResponse:
    grant = AuthorizationCodeGrant(code, code_verifier, config.redirect_uri)
    return await token_request(client, config, grant)


async def refresh_token_request(
    client: ClientSession,
    config: ShopifyAuthConfig,
    refresh_token: str,
) -> TokenResponse:
    return await token_request(client, config, RefreshTokenGrant(refresh_token))


async def _error_body(resp: Any) -> dict[str, Any]:
    try:
        parsed = await resp.json(content_type=None)
    except (ContentTypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return {
        "error": "unknown_error",
        "error_description": f"HTTP {resp.status}: {resp.reason}",
    }


def _malformed_response(status: int, grant: TokenGrant) -> TokenRequestError:
    logger.warning(f"token endpoint answered {status} with an unusable body")
    return TokenRequestError(
        TokenErrorKind.OTHER,
        f"Token {_action(grant)} failed: malformed token response",
        status,
        "invalid_response",
    )


def _action(grant: TokenGrant) -> str:
    return "refresh" if isinstance(grant, RefreshTokenGrant) else "exchange"
