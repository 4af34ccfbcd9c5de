from urllib.parse import urlencode

from .pkce import (
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_state,
)
from .types import AuthorizationRequest, ShopifyAuthConfig

PROVIDER_URL = "https://shopify.com"


def authorize_endpoint(shop_id: str) -> str:
    return f"{PROVIDER_URL}/authentication/{shop_id}/oauth/authorize"


def token_endpoint(shop_id: str) -> str:
    return f"{PROVIDER_URL}/authentication/{shop_id}/oauth/token"


def logout_endpoint(shop_id: str) -> str:
    return f"{PROVIDER_URL}/authentication/{shop_id}/logout"


def openid_configuration_endpoint(shop_id: str) -> str:
    return f"{PROVIDER_URL}/authentication/{shop_id}/.well-known/openid-configuration"


def graphql_endpoint(shop_id: str, api_version: str) -> str:
    return f"{PROVIDER_URL}/{shop_id}/account/customer/api/{api_version}/graphql"


def create_authorization_url(
    config: ShopifyAuthConfig,
    prompt: str | None = None,
    locale: str | None = None,
) -> tuple[str, AuthorizationRequest, str]:
    """Builds the authorize URL with fresh PKCE, state and nonce values.

    Returns the URL, the request parameters and the code verifier. Nothing is
    persisted here: the caller keeps state, nonce and verifier until the
    provider redirects back.
    """

    code_verifier = generate_code_verifier()
    request = AuthorizationRequest(
        scope=config.scope,
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        state=generate_state(),
        nonce=generate_nonce(16),
        code_challenge=generate_code_challenge(code_verifier),
        prompt=prompt,
        locale=locale or config.locale,
    )

    params = {
        "scope": request.scope,
        "client_id": request.client_id,
        "response_type": "code",
        "redirect_uri": request.redirect_uri,
        "state": request.state,
        "nonce": request.nonce,
        "code_challenge": request.code_challenge,
        "code_challenge_method": request.code_challenge_method,
    }
    if request.prompt:
        params["prompt"] = request.prompt
    if request.locale:
        params["locale"] = request.locale

    url = f"{authorize_endpoint(config.shop_id)}?{urlencode(params)}"
    return url, request, code_verifier


def create_logout_url(
    shop_id: str,
    id_token: str | None,
    post_logout_redirect_uri: str,
) -> str:
    """Provider logout URL. Without `id_token_hint` the provider may keep its
    own session alive, so callers should pass the id token when they have it."""

    params: dict[str, str] = {}
    if id_token:
        params["id_token_hint"] = id_token
    params["post_logout_redirect_uri"] = post_logout_redirect_uri
    return f"{logout_endpoint(shop_id)}?{urlencode(params)}"
