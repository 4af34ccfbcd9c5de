import time
from typing import Any, NamedTuple

DEFAULT_SCOPE = "openid email customer-account-api:full"
DEFAULT_API_VERSION = "2025-04"
DEFAULT_REFRESH_BUFFER_SECONDS = 300


class ShopifyAuthConfig(NamedTuple):
    shop_id: str
    client_id: str
    redirect_uri: str
    scope: str = DEFAULT_SCOPE
    locale: str | None = None
    api_version: str = DEFAULT_API_VERSION
    # only sent when the client runs in a browser-like context
    origin: str | None = None
    verify_id_token: bool = False
    refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS


class AuthorizationRequest(NamedTuple):
    scope: str
    client_id: str
    redirect_uri: str
    state: str
    nonce: str
    code_challenge: str
    code_challenge_method: str = "S256"
    prompt: str | None = None
    locale: str | None = None


class TokenResponse(NamedTuple):
    """Token endpoint response, before the caller stamps `issued_at`."""

    access_token: str
    expires_in: int
    scope: str = ""
    token_type: str = "Bearer"
    refresh_token: str | None = None
    id_token: str | None = None

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "TokenResponse":
        return cls(
            access_token=body["access_token"],
            expires_in=int(body["expires_in"]),
            scope=body.get("scope", ""),
            token_type=body.get("token_type", "Bearer"),
            refresh_token=body.get("refresh_token") or None,
            id_token=body.get("id_token") or None,
        )


class TokenSet(NamedTuple):
    access_token: str
    expires_in: int
    issued_at: int
    scope: str = ""
    token_type: str = "Bearer"
    refresh_token: str | None = None
    id_token: str | None = None

    @property
    def expires_at(self) -> int:
        return calculate_token_expiration(self.expires_in, self.issued_at)

    def is_expired(
        self,
        buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        now: int | None = None,
    ) -> bool:
        return is_token_expired(self.expires_in, self.issued_at, buffer_seconds, now)

    @classmethod
    def from_response(
        cls,
        response: TokenResponse,
        issued_at: int | None = None,
        previous: "TokenSet | None" = None,
    ) -> "TokenSet":
        """Stamps a token response. Refresh responses may omit the refresh
        and id tokens, in which case the previous ones are carried over."""

        refresh_token = response.refresh_token
        id_token = response.id_token
        if previous is not None:
            refresh_token = refresh_token or previous.refresh_token
            id_token = id_token or previous.id_token

        return cls(
            access_token=response.access_token,
            expires_in=response.expires_in,
            issued_at=now_ms() if issued_at is None else issued_at,
            scope=response.scope,
            token_type=response.token_type,
            refresh_token=refresh_token,
            id_token=id_token,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "idToken": self.id_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "issuedAt": self.issued_at,
            "scope": self.scope,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "TokenSet":
        return cls(
            access_token=raw["accessToken"],
            expires_in=int(raw["expiresIn"]),
            issued_at=int(raw["issuedAt"]),
            scope=raw.get("scope") or "",
            token_type=raw.get("tokenType") or "Bearer",
            refresh_token=raw.get("refreshToken") or None,
            id_token=raw.get("idToken") or None,
        )


class CustomerIdentity(NamedTuple):
    id: str
    display_name: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None

    @classmethod
    def from_graphql(cls, customer: dict[str, Any]) -> "CustomerIdentity":
        email = customer.get("emailAddress") or {}
        return cls(
            id=customer["id"],
            display_name=customer.get("displayName") or "",
            first_name=customer.get("firstName"),
            last_name=customer.get("lastName"),
            email=email.get("emailAddress"),
        )


def now_ms() -> int:
    return int(time.time() * 1000)


def calculate_token_expiration(expires_in: int, issued_at: int | None = None) -> int:
    """Absolute expiry in milliseconds. Derived, never stored."""

    if issued_at is None:
        issued_at = now_ms()
    return issued_at + expires_in * 1000


def is_token_expired(
    expires_in: int,
    issued_at: int,
    buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
    now: int | None = None,
) -> bool:
    if now is None:
        now = now_ms()
    return now + buffer_seconds * 1000 >= calculate_token_expiration(expires_in, issued_at)
