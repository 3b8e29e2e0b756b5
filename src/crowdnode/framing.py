"""Buffered request reader.

A request ends when the peer closes its side of the connection, or as soon
as the bytes read so far hold a complete JSON document, or a document that
ends like an object but can never become valid JSON. JSON objects are
self-delimiting, so clients that keep the socket open still get an answer.
"""

import asyncio
import json
import logging

from crowdnode.protocol import extract_payload

logger = logging.getLogger("crowdnode.framing")

DEFAULT_CHUNK_SIZE = 1024


_WHITESPACE = frozenset(b" \t\r\n")


def _may_be_complete(buffer: bytearray) -> bool:
    # Only try a full parse once the data ends like a JSON object, raw or
    # URL-encoded. Scans backwards so large uploads are not copied per chunk.
    end = len(buffer)
    while end and buffer[end - 1] in _WHITESPACE:
        end -= 1
    if not end:
        return False
    if buffer[end - 1] == ord("}"):
        return True
    return end >= 3 and bytes(buffer[end - 3:end]).upper() == b"%7D"


def _definitely_malformed(error: json.JSONDecodeError, text: str) -> bool:
    # Truncated input fails at the very end of the text, or inside a string
    # that is still open. A failure anywhere earlier cannot be fixed by more
    # bytes.
    if error.msg.startswith("Unterminated string"):
        return False
    return error.pos < len(text.rstrip())


def is_complete(buffer: bytearray) -> bool:
    """Check whether the accumulated bytes form a whole request.

    Malformed documents that end like an object also count, so the decoder
    can answer them straight away.
    """
    if not buffer or not _may_be_complete(buffer):
        return False
    try:
        text = extract_payload(bytes(buffer))
    except UnicodeDecodeError:
        # Ends in '}', so the bad bytes are not a split multi-byte sequence.
        return True
    try:
        json.loads(text)
    except RecursionError:
        return True
    except json.JSONDecodeError as e:
        return _definitely_malformed(e, text)
    return True


async def read_request(
    reader: asyncio.StreamReader,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: float | None = None,
) -> bytes:
    """Read one request from the stream.

    ``timeout`` bounds the whole read. When it expires with data buffered,
    that data is returned so the caller can answer it; with nothing read,
    asyncio.TimeoutError is raised. Transport errors (ConnectionError or any
    OSError) propagate unchanged and the caller aborts the connection.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None
    buffer = bytearray()
    while True:
        remaining = None if deadline is None else deadline - loop.time()
        try:
            if remaining is not None and remaining <= 0:
                raise asyncio.TimeoutError
            chunk = await asyncio.wait_for(reader.read(chunk_size), timeout=remaining)
        except asyncio.TimeoutError:
            if not buffer:
                raise
            logger.warning("Read timed out with %d bytes buffered", len(buffer))
            break
        if not chunk:
            break
        buffer += chunk
        if is_complete(buffer):
            break
    return bytes(buffer)
