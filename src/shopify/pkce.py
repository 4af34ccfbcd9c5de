import base64
import secrets
import string
import time

from authlib.oauth2.rfc7636 import create_s256_code_challenge

VERIFIER_BYTES = 32
NONCE_ALPHABET = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_lowercase


def base64url_encode(data: bytes) -> str:
    """Base64URL without padding: no `+`, `/` or `=` in the output."""

    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def generate_code_verifier() -> str:
    """32 bytes from the OS CSPRNG, base64url encoded (43 characters)."""

    return base64url_encode(secrets.token_bytes(VERIFIER_BYTES))


def generate_code_challenge(code_verifier: str) -> str:
    # RFC 7636 restricts verifiers to unreserved ASCII, so ASCII and UTF-8 agree
    return create_s256_code_challenge(code_verifier)


def generate_state() -> str:
    """Millisecond timestamp followed by a random base36 suffix."""

    timestamp = str(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(11))
    return timestamp + suffix


def generate_nonce(length: int = 16) -> str:
    if length <= 0:
        raise ValueError("nonce length must be positive")
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))
