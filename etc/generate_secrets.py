import secrets
import sys

from dotenv import dotenv_values, set_key


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else ".env"
    current = dotenv_values(path)

    _ = set_key(path, "FLASK_SECRET_KEY", secrets.token_hex())
    for key, default in [
        ("FLASK_SHOPIFY_SHOP_ID", ""),
        ("FLASK_SHOPIFY_CLIENT_ID", ""),
        ("FLASK_USE_SECURE_COOKIES", "true"),
    ]:
        if key not in current:
            _ = set_key(path, key, default)

    print(f"wrote FLASK_SECRET_KEY to {path}")
