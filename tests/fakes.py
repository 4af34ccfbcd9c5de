import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from src.shopify.pkce import base64url_encode

SHOP_ID = "12345"
CLIENT_ID = "shp_client-abc"
REDIRECT_URI = "https://app.example/auth/callback"
ISSUED_AT = 1_700_000_000_000


class FakeResponse:
    """Stands in for aiohttp.ClientResponse."""

    def __init__(self, status: int = 200, body: Any = None, reason: str = "OK"):
        self.status = status
        self.body = body
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.status < 400

    async def json(self, **kwargs) -> Any:
        if isinstance(self.body, Exception):
            raise self.body
        if self.body is None:
            raise ValueError("no json body")
        return self.body

    async def text(self) -> str:
        return json.dumps(self.body)


def make_session(*responses: FakeResponse | Exception) -> MagicMock:
    """A ClientSession double whose post and get answer with `responses` in order."""

    session = MagicMock()
    session.post = AsyncMock(side_effect=list(responses))
    session.get = AsyncMock(side_effect=list(responses))
    session.__aenter__.return_value = session
    session.__aexit__.return_value = None
    return session


def make_id_token(claims: dict[str, Any]) -> str:
    header = base64url_encode(json.dumps({"alg": "none"}).encode())
    payload = base64url_encode(json.dumps(claims).encode())
    return f"{header}.{payload}.signature"


def token_body(**overrides: Any) -> dict[str, Any]:
    body = {
        "access_token": "shcat_access",
        "expires_in": 3600,
        "scope": "openid email customer-account-api:full",
        "token_type": "Bearer",
        "refresh_token": "shcrt_refresh",
    }
    body.update(overrides)
    return {key: value for key, value in body.items() if value is not None}


def customer_body(**overrides: Any) -> dict[str, Any]:
    customer = {
        "id": "gid://shopify/Customer/1",
        "displayName": "Ada Lovelace",
        "firstName": "Ada",
        "lastName": "Lovelace",
    }
    customer.update(overrides)
    return {"data": {"customer": customer}}
