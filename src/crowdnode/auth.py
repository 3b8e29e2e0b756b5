"""Authentication: shared secret key and opaque identifiers."""

import hmac
import uuid

from crowdnode.protocol import AuthError, Request

SECRET_KEY_FIELD = "secretkey"
SECRET_KEY_MISMATCH = "secret keys do not match"


def generate_secret_key() -> str:
    """Generate a new shared secret key."""
    return str(uuid.uuid4())


def new_opaque_id() -> str:
    """Mint an identifier handed back to clients (e.g. compileUUID)."""
    return str(uuid.uuid4())


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


def authenticate(request: Request, server_secret: str) -> None:
    """Raise AuthError unless the request carries the server's secret key.

    The ``secretkey`` field is mandatory even when the server has no secret
    configured; in that case any value is accepted.
    """
    if SECRET_KEY_FIELD not in request.fields:
        raise AuthError(SECRET_KEY_MISMATCH)
    if not server_secret:
        return
    client_secret = request.fields[SECRET_KEY_FIELD]
    if not isinstance(client_secret, str):
        raise AuthError(SECRET_KEY_MISMATCH)
    if not constant_time_compare(client_secret, server_secret):
        raise AuthError(SECRET_KEY_MISMATCH)
