import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, MutableMapping, NamedTuple, override

from aiohttp import ClientError, ClientTimeout
from aiohttp.client import ClientSession

from .cookies import (
    PendingCookies,
    clear_token_cookies,
    read_token_cookies,
    write_token_cookies,
)
from .errors import ShopifyAuthError, StorageAccessDeniedError
from .types import AuthorizationRequest, TokenSet

logger = logging.getLogger(__name__)

TOKENS_KEY = "shopify-tokens"
STATE_KEY = "shopify-auth-state"
NONCE_KEY = "shopify-auth-nonce"
CODE_VERIFIER_KEY = "shopify-auth-code-verifier"
RETURN_TO_KEY = "shopify-auth-return-to"

PROXY_TIMEOUT = ClientTimeout(total=5)


class TokenStorageError(ShopifyAuthError):
    code = "token_storage_error"
    fatal = False


class TokenStorage(ABC):
    """Holds the current token set. A write replaces the whole set."""

    name: str = "storage"

    @abstractmethod
    async def read(self) -> TokenSet | None:
        pass

    @abstractmethod
    async def write(self, tokens: TokenSet):
        pass

    @abstractmethod
    async def clear(self):
        pass


class CookieTokenStorage(TokenStorage):
    """Server side of the httpOnly cookie backend.

    Reads come from the incoming request, writes are queued on `pending` and
    land on the response. Later reads in the same request see the writes.
    """

    name = "cookie"

    def __init__(self, request_cookies: Mapping[str, str], pending: PendingCookies):
        self.request_cookies = request_cookies
        self.pending = pending
        self._cleared = False
        self._written: TokenSet | None = None

    @override
    async def read(self) -> TokenSet | None:
        if self._written is not None:
            return self._written
        if self._cleared:
            return None
        return read_token_cookies(self.request_cookies)

    @override
    async def write(self, tokens: TokenSet):
        write_token_cookies(self.pending, tokens)
        self._written = tokens
        self._cleared = False

    @override
    async def clear(self):
        clear_token_cookies(self.pending)
        self._written = None
        self._cleared = True


class ProxyTokenStorage(TokenStorage):
    """Client of the server-mediated cookie API.

    The httpOnly cookies live in the aiohttp cookie jar and are never read
    here; every call carries them to the proxy, which answers with the token
    set or sets new cookies. A timeout reads as "no session".
    """

    name = "proxy"

    def __init__(
        self,
        client: ClientSession,
        base_url: str,
        prefix: str = "/api/auth/shopify",
    ):
        self.client = client
        self.base_url = base_url.rstrip("/") + prefix

    @override
    async def read(self) -> TokenSet | None:
        try:
            response = await self.client.get(
                f"{self.base_url}/get-tokens", timeout=PROXY_TIMEOUT
            )
            if response.status == 401:
                return None
            if not response.ok:
                logger.warning(f"get-tokens failed with status {response.status}")
                return None
            return TokenSet.from_json(await response.json())
        except asyncio.TimeoutError:
            logger.warning("timeout getting tokens from server")
            return None
        except (ClientError, ValueError, KeyError) as exception:
            logger.warning(f"error getting tokens from server: {exception!r}")
            return None

    @override
    async def write(self, tokens: TokenSet):
        try:
            response = await self.client.post(
                f"{self.base_url}/store-tokens",
                json=tokens.to_json(),
                timeout=PROXY_TIMEOUT,
            )
        except (ClientError, asyncio.TimeoutError) as exception:
            raise TokenStorageError(f"store-tokens failed: {exception!r}") from exception
        if not response.ok:
            raise TokenStorageError(f"store-tokens failed with status {response.status}")

    @override
    async def clear(self):
        try:
            response = await self.client.post(
                f"{self.base_url}/clear-tokens", timeout=PROXY_TIMEOUT
            )
            if not response.ok:
                logger.warning(f"clear-tokens failed with status {response.status}")
        except (ClientError, asyncio.TimeoutError) as exception:
            logger.warning(f"error clearing tokens on server: {exception!r}")
        # whatever the proxy said, the local jar must not keep the tokens
        self.client.cookie_jar.clear()


class LocalTokenStorage(TokenStorage):
    """Development fallback: the token set as one JSON value in client
    readable storage. Never the production default."""

    name = "local"

    def __init__(self, store: MutableMapping[str, Any]):
        self.store = store

    @override
    async def read(self) -> TokenSet | None:
        raw = self.store.get(TOKENS_KEY)
        if not raw:
            return None
        try:
            return TokenSet.from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exception:
            logger.debug(f"unable to load {TOKENS_KEY}: {exception!r}")
            del self.store[TOKENS_KEY]
            return None

    @override
    async def write(self, tokens: TokenSet):
        self.store[TOKENS_KEY] = json.dumps(tokens.to_json())

    @override
    async def clear(self):
        self.store.pop(TOKENS_KEY, None)


def select_token_storage(
    use_secure_cookies: bool,
    cookie_storage: TokenStorage,
    local_storage: TokenStorage,
) -> TokenStorage:
    return cookie_storage if use_secure_cookies else local_storage


class PendingAuthorization(NamedTuple):
    state: str
    nonce: str
    code_verifier: str
    return_to: str | None = None


class EphemeralAuthStore:
    """State, nonce and verifier kept across the provider redirect.

    Single use: `consume` removes everything before handing it out, so the
    verifier is gone whether the exchange that follows succeeds or fails.
    """

    def __init__(self, store: MutableMapping[str, Any]):
        self.store = store

    def save(
        self,
        request: AuthorizationRequest,
        code_verifier: str,
        return_to: str | None = None,
    ):
        self.clear()
        self.store[STATE_KEY] = request.state
        self.store[NONCE_KEY] = request.nonce
        self.store[CODE_VERIFIER_KEY] = code_verifier
        if return_to:
            self.store[RETURN_TO_KEY] = return_to

    def pending_state(self) -> str | None:
        return self.store.get(STATE_KEY)

    @contextmanager
    def consume(self) -> Iterator[PendingAuthorization | None]:
        values = {key: self.store.pop(key, None) for key in _EPHEMERAL_KEYS}
        state = values[STATE_KEY]
        nonce = values[NONCE_KEY]
        code_verifier = values[CODE_VERIFIER_KEY]
        if not state or not nonce or not code_verifier:
            yield None
            return
        yield PendingAuthorization(state, nonce, code_verifier, values[RETURN_TO_KEY])

    def clear(self):
        for key in _EPHEMERAL_KEYS:
            self.store.pop(key, None)


_EPHEMERAL_KEYS = (STATE_KEY, NONCE_KEY, CODE_VERIFIER_KEY, RETURN_TO_KEY)


class StorageAccess(ABC):
    """Permission to use first-party storage from a partitioned context."""

    @abstractmethod
    async def has_access(self) -> bool:
        pass

    @abstractmethod
    async def request_access(self) -> bool:
        pass

    async def ensure_access(self):
        if await self.has_access():
            return
        if not await self.request_access():
            raise StorageAccessDeniedError()


class GrantedStorageAccess(StorageAccess):
    """For clients without storage partitioning."""

    @override
    async def has_access(self) -> bool:
        return True

    @override
    async def request_access(self) -> bool:
        return True
