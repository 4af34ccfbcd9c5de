import pytest

from src.shopify.types import ShopifyAuthConfig, TokenSet
from tests.fakes import CLIENT_ID, ISSUED_AT, REDIRECT_URI, SHOP_ID, make_id_token


@pytest.fixture
def config() -> ShopifyAuthConfig:
    return ShopifyAuthConfig(
        shop_id=SHOP_ID,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
    )


@pytest.fixture
def tokens() -> TokenSet:
    return TokenSet(
        access_token="shcat_access",
        expires_in=3600,
        issued_at=ISSUED_AT,
        scope="openid email customer-account-api:full",
        refresh_token="shcrt_refresh",
        id_token=make_id_token({"nonce": "n"}),
    )
