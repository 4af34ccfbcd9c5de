from typing import Any

from aiohttp.client import ClientSession
from flask import Flask, jsonify, redirect, request, url_for

from src.auth import auth_config
from src.oauth import oauth
from src.security import hardened_http
from src.shopify.authenticator import (
    AuthenticationResult,
    authenticate_request,
    get_customer_orders,
    validate_order_ownership,
)
from src.shopify.errors import CustomerAccountApiError, CustomerInputError
from src.shopify.graphql import ADDRESS_INPUT_FIELDS

app = Flask(__name__)
_ = app.config.from_prefixed_env()
app.register_blueprint(oauth)

# fields a customer may change about themselves
EDITABLE_PROFILE_FIELDS = ("firstName", "lastName")


@app.get("/")
def page_home():
    return jsonify({"name": "shopify-customer-auth", "login": url_for("oauth.oauth_login")})


@app.get("/login")
def page_login():
    error = request.args.get("error")
    if error is None:
        return redirect(url_for("oauth.oauth_login"), 303)
    return jsonify({"error": error, "login": url_for("oauth.oauth_login")}), 401


async def authenticate(client: ClientSession) -> AuthenticationResult:
    config = auth_config()
    return await authenticate_request(
        client,
        config.shop_id,
        request.headers,
        request.cookies,
        config.api_version,
    )


def unauthorized(result: AuthenticationResult):
    return jsonify({"error": result.error}), result.status_code


def customer_api_failure(exception: CustomerAccountApiError, message: str):
    app.logger.warning(f"customer api call failed: {exception}")
    if isinstance(exception, CustomerInputError):
        body = {"error": exception.code, "message": exception.user_message}
        return jsonify(body | {"userErrors": exception.errors}), 422
    if exception.is_network_error:
        return jsonify({"error": "network_error", "message": exception.user_message}), 503
    return jsonify({"error": exception.code, "message": message}), 502


@app.get("/api/customer/profile")
async def get_profile():
    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        language = request.args.get("language")
        try:
            profile = await result.user.api_client.get_customer_profile(language)
        except ValueError:
            return jsonify({"error": f"Unsupported language: {language}"}), 400
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to load profile")

    return jsonify({"customer": profile})


@app.put("/api/customer/profile")
async def put_profile():
    body: dict[str, Any] = request.get_json(silent=True) or {}
    fields = {key: body[key] for key in EDITABLE_PROFILE_FIELDS if key in body}
    if not fields:
        return jsonify({"error": "Nothing to update"}), 400

    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        try:
            customer = await result.user.api_client.update_customer(fields)
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to update profile")

    return jsonify({"customer": customer})


@app.get("/api/customer/orders")
async def get_orders():
    order_ids = request.args.getlist("id")
    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        try:
            orders = await get_customer_orders(result.user.api_client, order_ids)
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to load orders")

    return jsonify({"customerId": result.user.customer_id, "orders": orders})


@app.post("/api/customer/order-status")
async def post_order_status():
    body: dict[str, Any] = request.get_json(silent=True) or {}
    order_id = body.get("orderId")
    if not order_id:
        return jsonify({"error": "orderId is required"}), 400

    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        ownership = await validate_order_ownership(result.user.api_client, order_id)

    if not ownership.is_owner:
        return jsonify({"error": ownership.error}), 404

    return jsonify({"customerId": result.user.customer_id, "order": ownership.order})


# Addresses


def address_input(body: dict[str, Any]) -> dict[str, Any]:
    address = body.get("address")
    if not isinstance(address, dict):
        return {}
    return {key: address[key] for key in ADDRESS_INPUT_FIELDS if key in address}


@app.get("/api/customer/addresses")
async def get_addresses():
    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        try:
            addresses = await result.user.api_client.get_addresses()
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to load addresses")

    return jsonify({"customerId": result.user.customer_id} | addresses)


@app.post("/api/customer/addresses")
async def post_address():
    body: dict[str, Any] = request.get_json(silent=True) or {}
    address = address_input(body)
    if not address:
        return jsonify({"error": "address is required"}), 400

    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        try:
            created = await result.user.api_client.create_address(
                address, default=bool(body.get("default"))
            )
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to create address")

    return jsonify({"address": created}), 201


@app.put("/api/customer/addresses/<address_id>")
async def put_address(address_id: str):
    body: dict[str, Any] = request.get_json(silent=True) or {}
    address = address_input(body)
    default = body.get("default")
    if not address and default is not True:
        return jsonify({"error": "Nothing to update"}), 400

    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        api_client = result.user.api_client
        try:
            if address:
                updated = await api_client.update_address(
                    address_id, address, None if default is None else bool(default)
                )
            else:
                updated = await api_client.set_default_address(address_id)
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to update address")

    return jsonify({"address": updated})


@app.delete("/api/customer/addresses/<address_id>")
async def delete_address(address_id: str):
    async with hardened_http.get_session() as client:
        result = await authenticate(client)
        if result.user is None:
            return unauthorized(result)

        try:
            deleted_id = await result.user.api_client.delete_address(address_id)
        except CustomerAccountApiError as exception:
            return customer_api_failure(exception, "Unable to delete address")

    return jsonify({"deletedAddressId": deleted_id})
