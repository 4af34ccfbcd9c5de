import json
from datetime import datetime, timezone
from typing import Any, Mapping

from werkzeug.wrappers import Response

from .types import TokenSet

ACCESS_TOKEN_COOKIE = "shopify-access-token"
REFRESH_TOKEN_COOKIE = "shopify-refresh-token"
TOKEN_DATA_COOKIE = "shopify-token-data"
TOKEN_COOKIES = (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, TOKEN_DATA_COOKIE)

COOKIE_OPTIONS: dict[str, Any] = {
    "httponly": True,
    "secure": True,
    "samesite": "Strict",
    "path": "/",
}


class PendingCookies:
    """Cookie writes collected while handling a request and applied to the
    response in one go, so the client never sees a half-written token set."""

    def __init__(self):
        self.writes: dict[str, tuple[str, datetime]] = {}

    def set(self, name: str, value: str, expires: datetime):
        self.writes[name] = (value, expires)

    def delete(self, name: str):
        self.writes[name] = ("", datetime.fromtimestamp(0, timezone.utc))

    def apply(self, response: Response) -> Response:
        for name, (value, expires) in self.writes.items():
            response.set_cookie(name, value, expires=expires, **COOKIE_OPTIONS)
        self.writes.clear()
        return response


def write_token_cookies(pending: PendingCookies, tokens: TokenSet):
    expires = datetime.fromtimestamp(tokens.expires_at / 1000, timezone.utc)
    data = tokens.to_json()
    del data["accessToken"]
    del data["refreshToken"]

    pending.set(ACCESS_TOKEN_COOKIE, tokens.access_token, expires)
    pending.set(REFRESH_TOKEN_COOKIE, tokens.refresh_token or "", expires)
    pending.set(TOKEN_DATA_COOKIE, json.dumps(data, separators=(",", ":")), expires)


def clear_token_cookies(pending: PendingCookies):
    for name in TOKEN_COOKIES:
        pending.delete(name)


def read_token_cookies(cookies: Mapping[str, str]) -> TokenSet | None:
    access_token = cookies.get(ACCESS_TOKEN_COOKIE)
    raw_data = cookies.get(TOKEN_DATA_COOKIE)
    if not access_token or not raw_data:
        return None

    try:
        data: dict[str, Any] = json.loads(raw_data)
        data["accessToken"] = access_token
        data["refreshToken"] = cookies.get(REFRESH_TOKEN_COOKIE) or None
        return TokenSet.from_json(data)
    except (ValueError, KeyError, TypeError):
        return None
