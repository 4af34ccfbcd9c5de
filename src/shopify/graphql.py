import asyncio
import logging
import re
from typing import Any, NamedTuple

from aiohttp import ClientError
from aiohttp.client import ClientSession

from . import graphql_endpoint
from .errors import CustomerAccountApiError, CustomerInputError
from .types import DEFAULT_API_VERSION

logger = logging.getLogger(__name__)

# language codes accepted by the @inContext directive
SUPPORTED_LANGUAGES = frozenset(
    """
    AF AK AM AR AS AZ BE BG BM BN BO BR BS CA CE CKB CO CS CU CY DA DE DV DZ
    EE EL EN EO ES ET EU FA FF FI FO FR FY GA GD GL GN GU GV HA HE HI HR HU HY
    IA ID IG II IS IT JA JV KA KI KK KL KM KN KO KS KU KW KY LB LG LN LO LT LU
    LV MG MI MK ML MN MR MS MT MY NB ND NE NL NN NO NV NY OM OR OS PA PL PS PT
    QU RM RN RO RU RW SD SE SG SI SK SL SN SO SQ SR SU SV SW TA TE TG TH TI TK
    TO TR TT UG UK UR UZ VI WO XH YI YO ZH ZU
    """.split()
)

_OPERATION_REGEX = re.compile(
    r"(?<![\w$])(query|mutation)(\s+\w+)?(\s*\([^)]*\))?(\s*\{)"
)


class GraphQLOperation(NamedTuple):
    query: str
    variables: dict[str, Any] | None = None
    operation_name: str | None = None


class GraphQLResponse(NamedTuple):
    data: dict[str, Any] | None
    extensions: dict[str, Any] | None = None


def localize_operation(operation: GraphQLOperation, language: str) -> GraphQLOperation:
    """Splices `@inContext(language: XX)` into the first top-level
    query or mutation header. This is a text transform, not a parser:
    fragment definitions and nested selections are skipped by tracking
    brace depth, and anonymous `{ ... }` shorthand is left untouched."""

    code = language.upper()
    if code not in SUPPORTED_LANGUAGES:
        raise ValueError(f"unsupported language: {language}")
    if "@inContext" in operation.query:
        return operation

    query = operation.query
    for match in _OPERATION_REGEX.finditer(query):
        prefix = query[: match.start()]
        if prefix.count("{") != prefix.count("}"):
            continue
        keyword, name, variables, brace = match.groups()
        header = f"{keyword}{name or ''}{variables or ''} @inContext(language: {code}){brace}"
        return operation._replace(query=prefix + header + query[match.end() :])

    logger.debug("no operation header to localize")
    return operation


GET_AUTHENTICATED_CUSTOMER = """
query GetAuthenticatedCustomer {
  customer {
    id
    displayName
    firstName
    lastName
  }
}
"""

GET_CUSTOMER_PROFILE = """
query GetCustomerProfile {
  customer {
    id
    firstName
    lastName
    displayName
    emailAddress {
      emailAddress
    }
    phoneNumber {
      phoneNumber
    }
    defaultAddress {
      id
      firstName
      lastName
      company
      address1
      address2
      city
      territoryCode
      zoneCode
      zip
      phoneNumber
    }
  }
}
"""

GET_CUSTOMER_ORDER = """
query GetCustomerOrder($orderId: ID!) {
  order(id: $orderId) {
    id
    name
    processedAt
    fulfillmentStatus
    financialStatus
    currentTotalPrice {
      amount
      currencyCode
    }
    lineItems(first: 10) {
      nodes {
        id
        title
        quantity
        currentQuantity
      }
    }
  }
}
"""

GET_CUSTOMER_ORDERS = """
query GetCustomerOrders($first: Int!) {
  orders(first: $first) {
    nodes {
      id
      name
      processedAt
      fulfillmentStatus
      financialStatus
      cancelledAt
      cancelReason
      currentTotalPrice {
        amount
        currencyCode
      }
    }
  }
}
"""

CUSTOMER_UPDATE = """
mutation customerUpdate($input: CustomerUpdateInput!) {
  customerUpdate(input: $input) {
    customer {
      id
      firstName
      lastName
      displayName
    }
    userErrors {
      field
      message
    }
  }
}
"""


ADDRESS_FIELDS = """
fragment AddressFields on CustomerAddress {
  id
  address1
  address2
  city
  company
  country
  territoryCode
  firstName
  lastName
  name
  phoneNumber
  province
  zoneCode
  zip
}
"""

# what CustomerAddressInput accepts
ADDRESS_INPUT_FIELDS = (
    "address1",
    "address2",
    "city",
    "company",
    "firstName",
    "lastName",
    "phoneNumber",
    "territoryCode",
    "zip",
    "zoneCode",
)

GET_CUSTOMER_ADDRESSES = (
    """
query GetCustomerAddresses($first: Int!) {
  customer {
    defaultAddress {
      id
    }
    addresses(first: $first) {
      nodes {
        ...AddressFields
      }
    }
  }
}
"""
    + ADDRESS_FIELDS
)

CUSTOMER_ADDRESS_CREATE = (
    """
mutation customerAddressCreate($address: CustomerAddressInput!, $defaultAddress: Boolean) {
  customerAddressCreate(address: $address, defaultAddress: $defaultAddress) {
    customerAddress {
      ...AddressFields
    }
    userErrors {
      field
      message
    }
  }
}
"""
    + ADDRESS_FIELDS
)

CUSTOMER_ADDRESS_UPDATE = (
    """
mutation customerAddressUpdate(
  $addressId: ID!
  $address: CustomerAddressInput
  $defaultAddress: Boolean
) {
  customerAddressUpdate(
    addressId: $addressId
    address: $address
    defaultAddress: $defaultAddress
  ) {
    customerAddress {
      ...AddressFields
    }
    userErrors {
      field
      message
    }
  }
}
"""
    + ADDRESS_FIELDS
)

CUSTOMER_ADDRESS_DELETE = """
mutation customerAddressDelete($addressId: ID!) {
  customerAddressDelete(addressId: $addressId) {
    deletedAddressId
    userErrors {
      field
      message
    }
  }
}
"""


def address_gid(address_id: str) -> str:
    """Accepts either a numeric address id or its full GID."""

    if address_id.startswith("gid://"):
        return address_id
    return f"gid://shopify/CustomerAddress/{address_id}"


class CustomerAccountApiClient:
    """Customer Account API client bound to one access token."""

    def __init__(
        self,
        client: ClientSession,
        shop_id: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        origin: str | None = None,
    ):
        self.client = client
        self.shop_id = shop_id
        self.access_token = access_token
        self.api_version = api_version
        self.origin = origin

    @property
    def endpoint(self) -> str:
        return graphql_endpoint(self.shop_id, self.api_version)

    def update_access_token(self, access_token: str):
        self.access_token = access_token

    def update_api_version(self, api_version: str):
        self.api_version = api_version

    async def query(
        self,
        operation: GraphQLOperation,
        language: str | None = None,
    ) -> GraphQLResponse:
        if language:
            operation = localize_operation(operation, language)

        headers = {
            "Content-Type": "application/json",
            # this endpoint family takes the raw token, no "Bearer " prefix
            "Authorization": self.access_token,
        }
        if self.origin:
            headers["Origin"] = self.origin
        body = {
            "operationName": operation.operation_name,
            "query": operation.query,
            "variables": operation.variables or {},
        }

        try:
            response = await self.client.post(self.endpoint, json=body, headers=headers)
            if response.status == 500:
                raise CustomerAccountApiError(
                    "Internal server error - verify access token parameters are correct",
                    None,
                    {"httpStatus": 500},
                )
            if not response.ok:
                raise CustomerAccountApiError(
                    f"HTTP {response.status}: {response.reason}",
                    None,
                    {"httpStatus": response.status},
                )
            result: dict[str, Any] = await response.json()
        except (ClientError, asyncio.TimeoutError, ValueError) as exception:
            raise CustomerAccountApiError(
                f"Network error: {exception}",
                None,
                {"networkError": True},
            ) from exception

        errors: list[dict[str, Any]] | None = result.get("errors")
        if errors:
            messages = ", ".join(error.get("message", "") for error in errors)
            raise CustomerAccountApiError(
                f"GraphQL errors: {messages}",
                errors,
                result.get("extensions"),
            )

        return GraphQLResponse(result.get("data"), result.get("extensions"))

    async def get_customer(self) -> dict[str, Any] | None:
        operation = GraphQLOperation(
            GET_AUTHENTICATED_CUSTOMER, operation_name="GetAuthenticatedCustomer"
        )
        response = await self.query(operation)
        return (response.data or {}).get("customer")

    async def get_customer_profile(self, language: str | None = None) -> dict[str, Any] | None:
        operation = GraphQLOperation(GET_CUSTOMER_PROFILE, operation_name="GetCustomerProfile")
        response = await self.query(operation, language)
        return (response.data or {}).get("customer")

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        """Looks the order up as this customer. Orders of other customers
        come back empty, which is what makes this an ownership check."""

        operation = GraphQLOperation(
            GET_CUSTOMER_ORDER, {"orderId": order_id}, "GetCustomerOrder"
        )
        response = await self.query(operation)
        return (response.data or {}).get("order")

    async def get_orders(self, first: int = 50) -> list[dict[str, Any]]:
        operation = GraphQLOperation(
            GET_CUSTOMER_ORDERS, {"first": first}, "GetCustomerOrders"
        )
        response = await self.query(operation)
        orders = (response.data or {}).get("orders") or {}
        return orders.get("nodes") or []

    async def update_customer(self, fields: dict[str, Any]) -> dict[str, Any]:
        operation = GraphQLOperation(CUSTOMER_UPDATE, {"input": fields}, "customerUpdate")
        payload = await self.mutate(operation, "customerUpdate")
        return payload.get("customer") or {}

    async def get_addresses(self, first: int = 20) -> dict[str, Any]:
        """The customer's addresses, each flagged with `isDefault`."""

        operation = GraphQLOperation(
            GET_CUSTOMER_ADDRESSES, {"first": first}, "GetCustomerAddresses"
        )
        response = await self.query(operation)
        customer = (response.data or {}).get("customer") or {}
        default_id = (customer.get("defaultAddress") or {}).get("id")
        nodes = (customer.get("addresses") or {}).get("nodes") or []
        addresses = [node | {"isDefault": node.get("id") == default_id} for node in nodes]
        return {"defaultAddressId": default_id, "addresses": addresses}

    async def create_address(
        self,
        address: dict[str, Any],
        default: bool = False,
    ) -> dict[str, Any]:
        operation = GraphQLOperation(
            CUSTOMER_ADDRESS_CREATE,
            {"address": address, "defaultAddress": default},
            "customerAddressCreate",
        )
        payload = await self.mutate(operation, "customerAddressCreate")
        return payload.get("customerAddress") or {}

    async def update_address(
        self,
        address_id: str,
        address: dict[str, Any] | None = None,
        default: bool | None = None,
    ) -> dict[str, Any]:
        variables: dict[str, Any] = {"addressId": address_gid(address_id)}
        if address:
            variables["address"] = address
        if default is not None:
            variables["defaultAddress"] = default
        operation = GraphQLOperation(CUSTOMER_ADDRESS_UPDATE, variables, "customerAddressUpdate")
        payload = await self.mutate(operation, "customerAddressUpdate")
        return payload.get("customerAddress") or {}

    async def set_default_address(self, address_id: str) -> dict[str, Any]:
        return await self.update_address(address_id, default=True)

    async def delete_address(self, address_id: str) -> str | None:
        operation = GraphQLOperation(
            CUSTOMER_ADDRESS_DELETE,
            {"addressId": address_gid(address_id)},
            "customerAddressDelete",
        )
        payload = await self.mutate(operation, "customerAddressDelete")
        return payload.get("deletedAddressId")

    async def mutate(self, operation: GraphQLOperation, name: str) -> dict[str, Any]:
        """Runs a mutation and returns its payload. `userErrors` in the
        payload raise `CustomerInputError`."""

        response = await self.query(operation)
        payload: dict[str, Any] = (response.data or {}).get(name) or {}
        user_errors: list[dict[str, Any]] = payload.get("userErrors") or []
        if user_errors:
            raise CustomerInputError(name, user_errors)
        return payload
