from enum import Enum
from typing import Any


class ShopifyAuthError(Exception):
    """Base for every authentication failure.

    `code` is a short machine string, `user_message` is safe to render, and
    `fatal` tells the caller whether retrying can help.
    """

    code: str = "auth_error"
    fatal: bool = True
    user_message: str = "We couldn't sign you in. Please try again."


class TokenErrorKind(Enum):
    INVALID_SHOP = "invalid_shop"
    INVALID_GRANT = "invalid_grant"
    INVALID_CLIENT = "invalid_client"
    INVALID_ORIGIN = "invalid_token"
    MISSING_USER_AGENT = "missing_user_agent"
    OTHER = "token_request_failed"


class TokenRequestError(ShopifyAuthError):
    """The token endpoint answered with a non-2xx status."""

    def __init__(
        self,
        kind: TokenErrorKind,
        message: str,
        status: int,
        error: str | None = None,
        description: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.error = error
        self.description = description

    @property
    def code(self) -> str:  # pyright: ignore[reportIncompatibleVariableOverride]
        return self.kind.value

    @property
    def user_message(self) -> str:  # pyright: ignore[reportIncompatibleVariableOverride]
        if self.kind == TokenErrorKind.INVALID_GRANT:
            return "Your sign-in has expired. Please sign in again."
        return ShopifyAuthError.user_message


class TokenNetworkError(ShopifyAuthError):
    """Timeouts, DNS and connection failures talking to the token endpoint."""

    code = "network_error"
    fatal = False
    user_message = "We couldn't reach the sign-in service. Please try again."


class CallbackError(ShopifyAuthError):
    def __init__(self, code: str, description: str | None = None):
        super().__init__(description or code)
        self.code = code
        self.description = description


class StorageAccessDeniedError(ShopifyAuthError):
    code = "storage_access_denied"
    user_message = (
        "Storage access is required to sign in. Allow cross-site tracking "
        "for this site in your browser settings, or use a different browser."
    )

    def __init__(self):
        super().__init__(self.user_message)


class CustomerAccountApiError(ShopifyAuthError):
    """Transport, GraphQL and network failures of the customer API."""

    code = "customer_api_error"
    user_message = "The operation failed. Please try again."

    def __init__(
        self,
        message: str,
        errors: list[dict[str, Any]] | None = None,
        extensions: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.errors = errors
        self.extensions = extensions

    @property
    def http_status(self) -> int | None:
        if self.extensions is None:
            return None
        return self.extensions.get("httpStatus")

    @property
    def is_network_error(self) -> bool:
        return bool(self.extensions and self.extensions.get("networkError"))


class CustomerInputError(CustomerAccountApiError):
    """A mutation the provider answered with `userErrors`. Those messages
    describe the rejected fields and are safe to show the customer."""

    code = "invalid_input"

    def __init__(self, operation: str, user_errors: list[dict[str, Any]]):
        super().__init__(f"{operation} rejected: {self.join(user_errors)}", user_errors)

    @property
    def user_message(self) -> str:
        return self.join(self.errors or [])

    @staticmethod
    def join(user_errors: list[dict[str, Any]]) -> str:
        return ", ".join(error.get("message", "") for error in user_errors)
