"""Wire protocol for crowdnode TCP requests.

One request per connection. The body is either raw JSON or anything
followed by the ``ck_json=`` marker and a URL-encoded JSON document:

  request:  {"secretkey":"...","action":"push","filename":"a.txt",
             "file_content_base64":"aGVsbG8="}
  response: {"return":"0","compileUUID":"..."}
  error:    {"return":"1","error":"unknown action"}

``return`` is the only status signal: "0" success, "1" error,
"3" secret key mismatch.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import unquote_plus


CK_JSON_KEY = b"ck_json="
PARAMETERS = "parameters"


class ReturnCode(str, Enum):
    OK = "0"
    ERROR = "1"
    AUTH_FAILED = "3"


class Action(str, Enum):
    PUSH = "push"
    PULL = "pull"
    SHELL = "shell"
    STATE = "state"
    CLEAR = "clear"
    SHUTDOWN = "shutdown"


class CrowdnodeError(Exception):
    """Base for errors reported back to the client as a JSON error."""

    return_code = ReturnCode.ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProtocolError(CrowdnodeError):
    """Malformed request or missing required field."""


class AuthError(CrowdnodeError):
    return_code = ReturnCode.AUTH_FAILED


class NotFoundError(CrowdnodeError):
    pass


class FileIOError(CrowdnodeError):
    pass


class CodecError(CrowdnodeError):
    pass


class UnknownActionError(CrowdnodeError):
    pass


class ProcessError(CrowdnodeError):
    """The shell command could not be launched or finished."""


_MISSING = object()


@dataclass
class Request:
    """A decoded request document."""

    fields: dict[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        """Look a field up at the top level, then under ``parameters``."""
        if name in self.fields:
            return self.fields[name]
        params = self.fields.get(PARAMETERS)
        if isinstance(params, dict) and name in params:
            return params[name]
        return default

    def require(self, name: str) -> Any:
        """Return a required field. Absent fields raise, falsy ones do not."""
        value = self.get(name, _MISSING)
        if value is _MISSING:
            raise ProtocolError(
                f"Invalid action JSON format for message: no {name} found"
            )
        return value

    def require_str(self, name: str) -> str:
        value = self.require(name)
        if not isinstance(value, str):
            raise ProtocolError(
                f"Invalid action JSON format for message: {name} must be a string"
            )
        return value


def extract_payload(raw: bytes) -> str:
    """Return the JSON text carried by a raw request body.

    Everything before a ``ck_json=`` marker is ignored and the rest is
    URL-decoded; without the marker the body is taken as-is.
    """
    idx = raw.find(CK_JSON_KEY)
    if idx == -1:
        return raw.decode("utf-8")
    encoded = raw[idx + len(CK_JSON_KEY):].decode("ascii", errors="replace")
    return unquote_plus(encoded, encoding="utf-8")


def decode_request(raw: bytes) -> Request:
    """Decode a raw request body into a Request."""
    try:
        data = json.loads(extract_payload(raw))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise ProtocolError("Invalid action JSON format for message") from e
    if not isinstance(data, dict):
        raise ProtocolError("Invalid action JSON format for message")
    return Request(data)


def encode_response(code: ReturnCode = ReturnCode.OK, **fields: Any) -> dict[str, Any]:
    """Build a response object; ``return`` always comes first."""
    return {"return": code.value, **fields}


def error_response(code: ReturnCode, message: str) -> dict[str, Any]:
    return encode_response(code, error=message)


def error_from_exception(exc: CrowdnodeError) -> dict[str, Any]:
    return error_response(exc.return_code, exc.message)


def serialize(response: dict[str, Any]) -> bytes:
    return json.dumps(response).encode("utf-8")
