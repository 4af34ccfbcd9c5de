"""Tests for the login, refresh and logout orchestration."""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlparse

import aiohttp
import pytest

from src.shopify.errors import TokenNetworkError
from src.shopify.session import SessionOrchestrator, SessionState, SingleFlight
from src.shopify.storage import (
    CODE_VERIFIER_KEY,
    NONCE_KEY,
    STATE_KEY,
    EphemeralAuthStore,
    LocalTokenStorage,
)
from src.shopify.types import TokenSet, now_ms
from tests.fakes import FakeResponse, make_id_token, make_session, token_body


def _orchestrator(client, config, store=None, other_store=None, refreshes=None):
    store = {} if store is None else store
    others = [LocalTokenStorage(other_store)] if other_store is not None else []
    return SessionOrchestrator(
        client,
        config,
        LocalTokenStorage(store),
        EphemeralAuthStore(store),
        other_storages=others,
        refreshes=refreshes,
    )


def _fresh(tokens: TokenSet) -> TokenSet:
    return tokens._replace(issued_at=now_ms())


def _expired(tokens: TokenSet) -> TokenSet:
    return tokens._replace(issued_at=now_ms() - 3600 * 1000)


class TestLogin:
    def test_begin_login_stores_pkce_material(self, config):
        store = {}
        orchestrator = _orchestrator(make_session(), config, store)

        url = orchestrator.begin_login(return_to="/orders")

        params = parse_qs(urlparse(url).query)
        assert params["state"] == [store[STATE_KEY]]
        assert params["nonce"] == [store[NONCE_KEY]]
        assert store[CODE_VERIFIER_KEY]
        assert orchestrator.state == SessionState.AUTHORIZING

    @pytest.mark.asyncio
    async def test_callback_exchanges_code_and_stores_tokens(self, config):
        store = {}
        client = make_session()
        orchestrator = _orchestrator(client, config, store)
        orchestrator.begin_login(return_to="/orders")
        state, nonce, verifier = store[STATE_KEY], store[NONCE_KEY], store[CODE_VERIFIER_KEY]
        client.post.side_effect = [
            FakeResponse(200, token_body(id_token=make_id_token({"nonce": nonce})))
        ]

        result = await orchestrator.complete_callback({"code": "code-1", "state": state})

        assert result.ok
        assert result.return_to == "/orders"
        assert client.post.call_args.kwargs["data"]["code_verifier"] == verifier
        assert await orchestrator.storage.read() == result.tokens
        assert orchestrator.state == SessionState.AUTHENTICATED
        assert STATE_KEY not in store

    @pytest.mark.asyncio
    async def test_state_mismatch_never_calls_token_endpoint(self, config):
        store = {}
        client = make_session()
        orchestrator = _orchestrator(client, config, store)
        orchestrator.begin_login()

        result = await orchestrator.complete_callback({"code": "code-1", "state": "forged"})

        assert not result.ok
        assert result.error.code == "invalid_state"
        client.post.assert_not_called()
        assert store == {}
        assert orchestrator.state == SessionState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_callback_is_single_use(self, config):
        store = {}
        client = make_session()
        orchestrator = _orchestrator(client, config, store)
        orchestrator.begin_login()
        state, nonce = store[STATE_KEY], store[NONCE_KEY]
        client.post.side_effect = [
            FakeResponse(200, token_body(id_token=make_id_token({"nonce": nonce})))
        ]
        params = {"code": "code-1", "state": state}

        first = await orchestrator.complete_callback(params)
        second = await orchestrator.complete_callback(params)

        assert first.ok
        assert second.error.code == "invalid_state"
        assert client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_provider_error_is_reported(self, config):
        store = {}
        orchestrator = _orchestrator(make_session(), config, store)
        orchestrator.begin_login()

        result = await orchestrator.complete_callback(
            {"error": "access_denied", "error_description": "user cancelled"}
        )

        assert result.error.code == "access_denied"
        assert str(result.error) == "user cancelled"
        assert store == {}

    @pytest.mark.asyncio
    async def test_missing_code(self, config):
        store = {}
        orchestrator = _orchestrator(make_session(), config, store)
        orchestrator.begin_login()

        result = await orchestrator.complete_callback({"state": store[STATE_KEY]})

        assert result.error.code == "missing_code"

    @pytest.mark.asyncio
    async def test_nonce_mismatch_stores_nothing(self, config):
        store = {}
        client = make_session()
        orchestrator = _orchestrator(client, config, store)
        orchestrator.begin_login()
        client.post.side_effect = [
            FakeResponse(200, token_body(id_token=make_id_token({"nonce": "replayed"})))
        ]

        result = await orchestrator.complete_callback({"code": "c", "state": store[STATE_KEY]})

        assert result.error.code == "invalid_nonce"
        assert await orchestrator.storage.read() is None

    @pytest.mark.asyncio
    async def test_rejected_exchange_is_reported(self, config):
        store = {}
        client = make_session()
        orchestrator = _orchestrator(client, config, store)
        orchestrator.begin_login()
        client.post.side_effect = [FakeResponse(400, {"error": "invalid_grant"})]

        result = await orchestrator.complete_callback({"code": "c", "state": store[STATE_KEY]})

        assert result.error.code == "invalid_grant"
        assert CODE_VERIFIER_KEY not in store


class TestRefresh:
    @pytest.mark.asyncio
    async def test_fresh_tokens_are_returned_as_is(self, config, tokens):
        client = make_session()
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_fresh(tokens))

        assert await orchestrator.access_token() == tokens.access_token
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, config, tokens):
        async def post(*args, **kwargs):
            await asyncio.sleep(0)
            return FakeResponse(200, token_body(access_token="new", refresh_token=None))

        client = make_session()
        client.post.side_effect = post
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_expired(tokens))

        first, second = await asyncio.gather(
            orchestrator.current_tokens(),
            orchestrator.current_tokens(),
        )

        assert client.post.call_count == 1
        assert first == second
        assert first.access_token == "new"
        assert first.refresh_token == tokens.refresh_token

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_the_session(self, config, tokens):
        client = make_session(FakeResponse(400, {"error": "invalid_grant"}))
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_expired(tokens))

        assert await orchestrator.current_tokens() is None
        assert await orchestrator.storage.read() is None
        assert orchestrator.state == SessionState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_network_failure_keeps_the_session(self, config, tokens):
        client = make_session(aiohttp.ClientConnectionError("offline"))
        orchestrator = _orchestrator(client, config)
        expired = _expired(tokens)
        await orchestrator.storage.write(expired)

        with pytest.raises(TokenNetworkError):
            await orchestrator.current_tokens()

        assert await orchestrator.storage.read() == expired

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_is_anonymous(self, config, tokens):
        client = make_session()
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_expired(tokens)._replace(refresh_token=None))

        assert await orchestrator.current_tokens() is None
        assert await orchestrator.storage.read() is None
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_force_refresh(self, config, tokens):
        client = make_session(FakeResponse(200, token_body(access_token="forced")))
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_fresh(tokens))

        refreshed = await orchestrator.current_tokens(force_refresh=True)

        assert refreshed.access_token == "forced"


@pytest.mark.asyncio
async def test_single_flight_forgets_finished_calls():
    flight = SingleFlight()
    calls = 0

    async def call():
        nonlocal calls
        calls += 1
        return calls

    assert await flight.run("key", call) == 1
    await asyncio.sleep(0)
    assert await flight.run("key", call) == 2
    assert flight.inflight == {}


@pytest.mark.asyncio
async def test_single_flight_keeps_finished_results():
    flight = SingleFlight(keep_seconds=30)
    calls = 0

    async def call():
        nonlocal calls
        calls += 1
        return calls

    assert await flight.run("key", call) == 1
    assert await flight.run("key", call) == 1
    assert await flight.run("other", call) == 2


def test_single_flight_across_event_loops():
    flight = SingleFlight()
    calls = 0

    async def call():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.3)
        return "shared"

    def run_in_own_loop(_):
        return asyncio.run(flight.run("key", call))

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(run_in_own_loop, None)
        time.sleep(0.05)
        second = pool.submit(run_in_own_loop, None)
        results = [first.result(timeout=5), second.result(timeout=5)]

    assert results == ["shared", "shared"]
    assert calls == 1
    assert flight.inflight == {}


@pytest.mark.asyncio
async def test_single_flight_shares_failures():
    flight = SingleFlight()

    async def call():
        await asyncio.sleep(0)
        raise TokenNetworkError("offline")

    results = await asyncio.gather(
        flight.run("key", call), flight.run("key", call), return_exceptions=True
    )

    assert all(isinstance(result, TokenNetworkError) for result in results)
    assert flight.inflight == {}


class TestSharedRefresh:
    """Requests of one client, each with its own storage, refreshing together."""

    @pytest.mark.asyncio
    async def test_every_storage_gets_the_refreshed_set(self, config, tokens):
        async def post(*args, **kwargs):
            await asyncio.sleep(0)
            return FakeResponse(200, token_body(access_token="new", refresh_token="rotated"))

        client = make_session()
        client.post.side_effect = post
        refreshes = SingleFlight(keep_seconds=30)
        first_store, second_store = {}, {}
        first = _orchestrator(client, config, first_store, refreshes=refreshes)
        second = _orchestrator(client, config, second_store, refreshes=refreshes)
        await first.storage.write(_expired(tokens))
        await second.storage.write(_expired(tokens))

        first_tokens, second_tokens = await asyncio.gather(
            first.current_tokens(), second.current_tokens()
        )

        assert client.post.call_count == 1
        assert first_tokens == second_tokens
        assert await first.storage.read() == first_tokens
        assert await second.storage.read() == first_tokens
        assert second.state == SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_late_request_with_rotated_token_reuses_result(self, config, tokens):
        client = make_session(
            FakeResponse(200, token_body(access_token="new", refresh_token="rotated"))
        )
        refreshes = SingleFlight(keep_seconds=30)
        first = _orchestrator(client, config, refreshes=refreshes)
        late = _orchestrator(client, config, refreshes=refreshes)
        await first.storage.write(_expired(tokens))
        await late.storage.write(_expired(tokens))

        refreshed = await first.current_tokens()

        assert await late.current_tokens() == refreshed
        assert client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_rejection_signs_out_every_storage(self, config, tokens):
        client = make_session(FakeResponse(400, {"error": "invalid_grant"}))
        refreshes = SingleFlight(keep_seconds=30)
        first = _orchestrator(client, config, refreshes=refreshes)
        late = _orchestrator(client, config, refreshes=refreshes)
        await first.storage.write(_expired(tokens))
        await late.storage.write(_expired(tokens))

        assert await first.current_tokens() is None
        assert await late.current_tokens() is None
        assert await late.storage.read() is None
        assert client.post.call_count == 1


class TestCustomer:
    @pytest.mark.asyncio
    async def test_current_customer(self, config, tokens):
        client = make_session(
            FakeResponse(200, {"data": {"customer": {"id": "gid://1", "displayName": "Ada"}}})
        )
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_fresh(tokens))

        customer = await orchestrator.current_customer()

        assert customer.id == "gid://1"
        assert client.post.call_args.kwargs["headers"]["Authorization"] == tokens.access_token

    @pytest.mark.asyncio
    async def test_rejected_token_signs_out(self, config, tokens):
        client = make_session(FakeResponse(401, None, "Unauthorized"))
        orchestrator = _orchestrator(client, config)
        await orchestrator.storage.write(_fresh(tokens))

        assert await orchestrator.current_customer() is None
        assert await orchestrator.storage.read() is None

    @pytest.mark.asyncio
    async def test_anonymous(self, config):
        client = make_session()

        assert await _orchestrator(client, config).current_customer() is None
        client.post.assert_not_called()


@pytest.mark.asyncio
async def test_logout_clears_every_backend(config, tokens):
    store, other_store = {}, {}
    orchestrator = _orchestrator(make_session(), config, store, other_store)
    await orchestrator.storage.write(tokens)
    await orchestrator.other_storages[0].write(tokens._replace(id_token=None))

    url = await orchestrator.logout("https://app.example/?shopify_logout=true")

    params = parse_qs(urlparse(url).query)
    assert params["id_token_hint"] == [tokens.id_token]
    assert params["post_logout_redirect_uri"] == ["https://app.example/?shopify_logout=true"]
    assert store == {}
    assert other_store == {}
    assert orchestrator.state == SessionState.ANONYMOUS
