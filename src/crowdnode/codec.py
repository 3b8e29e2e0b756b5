"""Base64 codec used to carry file payloads inside JSON."""

import base64
import binascii

from crowdnode.protocol import CodecError


def encode(data: bytes) -> str:
    """Encode raw bytes as base64 ASCII text. Empty input gives ''."""
    return base64.b64encode(data).decode("ascii")


def decode(text: str) -> bytes:
    """Decode base64 text into raw bytes.

    Whitespace (line-wrapped base64) is ignored. Anything else that is not
    valid base64 raises CodecError.
    """
    compact = "".join(text.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecError("Failed to Base64 decode file") from e
