"""ID token helpers.

`decode_jwt` does not verify anything. Claims read through it are
informational (display name, nonce matching) and must never back a trust
decision. `verify_id_token` checks the signature against the provider's
published keys and is what to use when the claims matter.
"""

import asyncio
import json
import logging
from typing import Any, NamedTuple

from aiohttp import ClientError
from aiohttp.client import ClientSession
from authlib.jose import JsonWebKey, jwt
from authlib.jose.errors import JoseError

from . import openid_configuration_endpoint
from .errors import CallbackError
from .pkce import base64url_decode

logger = logging.getLogger(__name__)


class DecodedJwt(NamedTuple):
    header: dict[str, Any]
    payload: dict[str, Any]
    signature: str


def decode_jwt(token: str) -> DecodedJwt:
    try:
        header, payload, signature = token.split(".")
        decoded = DecodedJwt(
            json.loads(base64url_decode(header)),
            json.loads(base64url_decode(payload)),
            signature,
        )
    except ValueError as exception:
        raise CallbackError("invalid_id_token", "malformed id_token") from exception
    if not isinstance(decoded.header, dict) or not isinstance(decoded.payload, dict):
        raise CallbackError("invalid_id_token", "id_token header and payload must be objects")
    return decoded


def get_nonce(token: str) -> str | None:
    return decode_jwt(token).payload.get("nonce")


async def _get_json(client: ClientSession, url: str) -> dict[str, Any] | None:
    try:
        response = await client.get(url)
        if not response.ok:
            logger.warning(f"could not fetch {url}: {response.status}")
            return None
        document = await response.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as exception:
        logger.warning(f"could not fetch {url}: {exception!r}")
        return None
    return document if isinstance(document, dict) else None


async def fetch_openid_configuration(
    client: ClientSession,
    shop_id: str,
) -> dict[str, Any] | None:
    """Returns the provider's discovery document"""

    return await _get_json(client, openid_configuration_endpoint(shop_id))


async def fetch_jwks(client: ClientSession, jwks_uri: str) -> dict[str, Any] | None:
    return await _get_json(client, jwks_uri)


def verify_id_token(
    token: str,
    jwks: dict[str, Any],
    issuer: str,
    client_id: str,
    nonce: str,
) -> dict[str, Any]:
    """Verifies signature, issuer, audience, expiry and nonce. Returns claims."""

    try:
        claims = jwt.decode(
            token,
            JsonWebKey.import_key_set(jwks),
            claims_options={
                "iss": {"essential": True, "value": issuer},
                "aud": {"essential": True, "value": client_id},
            },
        )
        claims.validate()
    except (JoseError, ValueError) as exception:
        logger.warning(f"id_token verification failed: {exception!r}")
        raise CallbackError("invalid_id_token", str(exception)) from exception

    if claims.get("nonce") != nonce:
        raise CallbackError("invalid_nonce", "id_token nonce mismatch")
    return dict(claims)


async def verify_id_token_with_provider(
    client: ClientSession,
    shop_id: str,
    client_id: str,
    token: str,
    nonce: str,
) -> dict[str, Any]:
    meta = await fetch_openid_configuration(client, shop_id)
    if not meta or not meta.get("jwks_uri") or not meta.get("issuer"):
        raise CallbackError("invalid_id_token", "missing provider metadata")
    jwks = await fetch_jwks(client, meta["jwks_uri"])
    if not jwks:
        raise CallbackError("invalid_id_token", "missing provider keys")
    return verify_id_token(token, jwks, meta["issuer"], client_id, nonce)
