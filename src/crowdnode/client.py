"""TCP client: sends a single request to a crowdnode server."""

import asyncio
import json
from typing import Any
from urllib.parse import quote_plus

from crowdnode.auth import SECRET_KEY_FIELD
from crowdnode.protocol import CK_JSON_KEY


def build_request(action: str, secret_key: str, **fields: Any) -> dict[str, Any]:
    """Build a request object for ``action``."""
    return {SECRET_KEY_FIELD: secret_key, "action": action, **fields}


def encode_request(request: dict[str, Any], form: bool = False) -> bytes:
    """Encode a request body, raw JSON or as a ``ck_json=`` form field."""
    text = json.dumps(request)
    if form:
        return CK_JSON_KEY + quote_plus(text).encode("ascii")
    return text.encode("utf-8")


async def send_request(
    host: str,
    port: int,
    request: dict[str, Any],
    *,
    form: bool = False,
    timeout: float = 30,
) -> dict[str, Any] | None:
    """Send one request and return the decoded response.

    Returns None if the server closed the connection without answering,
    which is what it does for ``shutdown``.
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=timeout
    )
    try:
        writer.write(encode_request(request, form=form))
        await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
        raw = await asyncio.wait_for(reader.read(), timeout=timeout)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    if not raw:
        return None
    return json.loads(raw.decode("utf-8"))
