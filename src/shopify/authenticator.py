import logging
from typing import Any, Iterable, Mapping, NamedTuple

from aiohttp.client import ClientSession

from .cookies import ACCESS_TOKEN_COOKIE
from .errors import CustomerAccountApiError
from .graphql import CustomerAccountApiClient
from .types import DEFAULT_API_VERSION, CustomerIdentity

logger = logging.getLogger(__name__)


class AuthenticatedUser(NamedTuple):
    customer: CustomerIdentity
    access_token: str
    api_client: CustomerAccountApiClient

    @property
    def customer_id(self) -> str:
        return self.customer.id


class AuthenticationResult(NamedTuple):
    success: bool
    user: AuthenticatedUser | None = None
    error: str | None = None
    status_code: int = 200


class OrderOwnership(NamedTuple):
    is_owner: bool
    order: dict[str, Any] | None = None
    error: str | None = None


def extract_access_token(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
) -> str | None:
    """Authorization header first, then the access token cookie."""

    authorization = headers.get("Authorization") or headers.get("authorization")
    if authorization:
        token = authorization.removeprefix("Bearer ").strip()
        if token:
            return token
    return cookies.get(ACCESS_TOKEN_COOKIE) or None


def _failure(error: str, status_code: int) -> AuthenticationResult:
    return AuthenticationResult(False, error=error, status_code=status_code)


async def authenticate_request(
    client: ClientSession,
    shop_id: str,
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    api_version: str = DEFAULT_API_VERSION,
) -> AuthenticationResult:
    """Verifies the caller's token by asking the provider who it belongs to.

    Only the customer id returned by the provider is trusted. A rejected
    token, a GraphQL error or an empty customer are all a 401.
    """

    access_token = extract_access_token(headers, cookies)
    if not access_token:
        return _failure("Missing authentication token", 401)

    api_client = CustomerAccountApiClient(client, shop_id, access_token, api_version)
    try:
        customer = await api_client.get_customer()
    except CustomerAccountApiError as exception:
        if exception.is_network_error:
            logger.warning(f"customer api unreachable: {exception}")
            return _failure("Authentication service unavailable", 503)
        logger.info(f"authentication rejected: {exception}")
        return _failure("Invalid or expired authentication token", 401)

    if not customer or not customer.get("id"):
        return _failure("Unable to retrieve customer information", 401)

    user = AuthenticatedUser(
        CustomerIdentity.from_graphql(customer),
        access_token,
        api_client,
    )
    return AuthenticationResult(True, user=user)


async def validate_order_ownership(
    api_client: CustomerAccountApiClient,
    order_id: str,
) -> OrderOwnership:
    """Never filter a privileged query by a caller supplied customer id; ask
    for the order as the authenticated customer instead."""

    try:
        order = await api_client.get_order(order_id)
    except CustomerAccountApiError as exception:
        logger.warning(f"order validation error: {exception}")
        return OrderOwnership(False, error="Unable to validate order ownership")

    if not order:
        return OrderOwnership(False, error="Order not found or not owned by customer")
    return OrderOwnership(True, order=order)


async def get_customer_orders(
    api_client: CustomerAccountApiClient,
    order_ids: Iterable[str] = (),
) -> list[dict[str, Any]]:
    orders = await api_client.get_orders()
    wanted = set(order_ids)
    if not wanted:
        return orders
    return [order for order in orders if order.get("id") in wanted]
