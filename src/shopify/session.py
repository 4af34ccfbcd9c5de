import asyncio
import concurrent.futures
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Mapping, NamedTuple, Sequence

from aiohttp.client import ClientSession

from . import create_authorization_url, create_logout_url
from .errors import (
    CallbackError,
    CustomerAccountApiError,
    ShopifyAuthError,
    TokenNetworkError,
    TokenRequestError,
)
from .graphql import CustomerAccountApiClient
from .jwt import get_nonce, verify_id_token_with_provider
from .storage import (
    EphemeralAuthStore,
    GrantedStorageAccess,
    StorageAccess,
    TokenStorage,
)
from .tokens import exchange_code, refresh_token_request
from .types import CustomerIdentity, ShopifyAuthConfig, TokenSet

logger = logging.getLogger(__name__)


class SessionState(Enum):
    ANONYMOUS = "anonymous"
    AUTHORIZING = "authorizing"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class CallbackResult(NamedTuple):
    tokens: TokenSet | None = None
    error: ShopifyAuthError | None = None
    return_to: str | None = None

    @property
    def ok(self) -> bool:
        return self.tokens is not None


class SingleFlight[T]:
    """Callers with the same key share one in-flight call, across threads
    and event loops.

    With `keep_seconds`, a finished call's result keeps answering its key
    for that long. Requests still carrying a rotated refresh token then get
    the new set instead of spending the old token a second time.
    """

    def __init__(self, keep_seconds: float = 0):
        self.keep_seconds = keep_seconds
        self.lock = threading.Lock()
        self.inflight: dict[str, concurrent.futures.Future[T]] = {}
        self.finished: dict[str, tuple[float, T]] = {}

    async def run(self, key: str, call: Callable[[], Awaitable[T]]) -> T:
        with self.lock:
            self._forget_expired()
            if key in self.finished:
                return self.finished[key][1]
            future = self.inflight.get(key)
            leading = future is None
            if future is None:
                future = self.inflight[key] = concurrent.futures.Future()

        if not leading:
            return await asyncio.wrap_future(future)

        try:
            result = await call()
        except BaseException as exception:
            with self.lock:
                del self.inflight[key]
            future.set_exception(exception)
            raise

        with self.lock:
            del self.inflight[key]
            if self.keep_seconds > 0:
                self.finished[key] = (time.monotonic() + self.keep_seconds, result)
        future.set_result(result)
        return result

    def _forget_expired(self):
        now = time.monotonic()
        for key, (until, _) in list(self.finished.items()):
            if until <= now:
                del self.finished[key]


class SessionOrchestrator:
    """Login, callback, refresh and logout over one token storage backend.

    `storage` is the backend chosen for this operation, `other_storages` are
    the remaining backends, which logout clears as well.
    """

    def __init__(
        self,
        client: ClientSession,
        config: ShopifyAuthConfig,
        storage: TokenStorage,
        ephemeral: EphemeralAuthStore,
        other_storages: Sequence[TokenStorage] = (),
        storage_access: StorageAccess | None = None,
        refreshes: SingleFlight[TokenSet | None] | None = None,
    ):
        self.client = client
        self.config = config
        self.storage = storage
        self.ephemeral = ephemeral
        self.other_storages = tuple(other_storages)
        self.storage_access = storage_access or GrantedStorageAccess()
        self.refreshes = refreshes or SingleFlight()
        self.state = (
            SessionState.AUTHORIZING
            if ephemeral.pending_state() is not None
            else SessionState.ANONYMOUS
        )

    def begin_login(
        self,
        prompt: str | None = None,
        locale: str | None = None,
        return_to: str | None = None,
    ) -> str:
        """Stores fresh PKCE material and returns the URL to redirect to.
        Call it straight from the user's action: some browsers only grant
        storage access in response to a gesture."""

        url, request, code_verifier = create_authorization_url(self.config, prompt, locale)
        self.ephemeral.save(request, code_verifier, return_to)
        self.state = SessionState.AUTHORIZING
        logger.debug(f"login started state={request.state[:8]}...")
        return url

    async def complete_callback(self, params: Mapping[str, str]) -> CallbackResult:
        try:
            tokens, return_to = await self._complete_callback(params)
        except ShopifyAuthError as exception:
            logger.warning(f"callback failed: {exception.code} {exception}")
            self.state = SessionState.ANONYMOUS
            return CallbackResult(error=exception)

        self.state = SessionState.AUTHENTICATED
        return CallbackResult(tokens, return_to=return_to)

    async def _complete_callback(
        self,
        params: Mapping[str, str],
    ) -> tuple[TokenSet, str | None]:
        with self.ephemeral.consume() as pending:
            if error := params.get("error"):
                raise CallbackError(error, params.get("error_description"))

            state = params.get("state")
            if pending is None or not state or state != pending.state:
                raise CallbackError("invalid_state", "State parameter mismatch or missing")

            code = params.get("code")
            if not code:
                raise CallbackError("missing_code", "Authorization code not received")

            self.state = SessionState.EXCHANGING
            await self.storage_access.ensure_access()
            response = await exchange_code(self.client, self.config, code, pending.code_verifier)

            if response.id_token:
                await self._check_id_token(response.id_token, pending.nonce)

            tokens = TokenSet.from_response(response)
            await self.storage.write(tokens)
            return tokens, pending.return_to

    async def _check_id_token(self, id_token: str, nonce: str):
        if self.config.verify_id_token:
            await verify_id_token_with_provider(
                self.client,
                self.config.shop_id,
                self.config.client_id,
                id_token,
                nonce,
            )
            return

        # unverified decode, only good enough to spot a replayed response
        if get_nonce(id_token) != nonce:
            raise CallbackError("invalid_nonce", "id_token nonce mismatch")

    async def current_tokens(self, force_refresh: bool = False) -> TokenSet | None:
        """Returns a usable token set, refreshing it first when it is inside
        the expiry buffer. `None` means the session is anonymous."""

        tokens = await self.storage.read()
        if tokens is None:
            self.state = SessionState.ANONYMOUS
            return None

        buffer = self.config.refresh_buffer_seconds
        if not force_refresh and not tokens.is_expired(buffer):
            self.state = SessionState.AUTHENTICATED
            return tokens

        refresh_token = tokens.refresh_token
        if not refresh_token:
            logger.debug("token expired and no refresh token available")
            await self.invalidate()
            return None

        refreshed = await self.refreshes.run(
            refresh_token,
            lambda: self._refresh(tokens, refresh_token, force_refresh),
        )
        if refreshed is None:
            await self.invalidate()
            return None

        # the refresh may have run for another request with its own storage
        if await self.storage.read() != refreshed:
            await self.storage.write(refreshed)
        self.state = SessionState.AUTHENTICATED
        return refreshed

    async def _refresh(
        self,
        previous: TokenSet,
        refresh_token: str,
        force_refresh: bool,
    ) -> TokenSet | None:
        # another caller may have replaced the set since it was read
        current = await self.storage.read()
        if (
            current is not None
            and current.access_token != previous.access_token
            and not current.is_expired(self.config.refresh_buffer_seconds)
        ):
            return current

        self.state = SessionState.REFRESHING
        try:
            response = await refresh_token_request(self.client, self.config, refresh_token)
        except TokenRequestError as exception:
            logger.warning(f"token refresh rejected: {exception.code}")
            return None
        except TokenNetworkError:
            self.state = SessionState.AUTHENTICATED
            raise

        logger.debug(f"token refreshed force={force_refresh}")
        return TokenSet.from_response(response, previous=previous)

    async def access_token(self) -> str | None:
        tokens = await self.current_tokens()
        return tokens.access_token if tokens else None

    async def customer_client(self) -> CustomerAccountApiClient | None:
        tokens = await self.current_tokens()
        if tokens is None:
            return None
        return CustomerAccountApiClient(
            self.client,
            self.config.shop_id,
            tokens.access_token,
            self.config.api_version,
            self.config.origin,
        )

    async def current_customer(self) -> CustomerIdentity | None:
        """The "who is signed in" signal. Any failure reads as signed out."""

        api_client = await self.customer_client()
        if api_client is None:
            return None
        try:
            customer = await api_client.get_customer()
        except CustomerAccountApiError as exception:
            logger.warning(f"customer lookup failed: {exception}")
            if exception.http_status == 401:
                await self.invalidate()
            return None
        if not customer or not customer.get("id"):
            return None
        return CustomerIdentity.from_graphql(customer)

    async def invalidate(self):
        await self.storage.clear()
        self.state = SessionState.ANONYMOUS

    async def logout(self, post_logout_redirect_uri: str) -> str:
        """Clears every backend, then returns the provider logout URL so the
        provider ends its own session too."""

        id_token: str | None = None
        for storage in (self.storage, *self.other_storages):
            tokens = await storage.read()
            if tokens is not None and tokens.id_token and id_token is None:
                id_token = tokens.id_token
            await storage.clear()

        self.ephemeral.clear()
        self.state = SessionState.ANONYMOUS
        return create_logout_url(self.config.shop_id, id_token, post_logout_redirect_uri)
