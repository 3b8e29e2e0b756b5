"""Command dispatch: one handler per request ``action``.

File actions resolve ``filename`` by appending it to the configured base
directory. Filenames are not checked for ``..`` or absolute paths, and
``shell`` runs whatever command line it is given with the server's
privileges; both are trust boundaries owned by whoever holds the secret.
"""

import asyncio
import logging
import os
import signal
from typing import Any, Awaitable, Callable

from crowdnode import codec
from crowdnode.auth import new_opaque_id
from crowdnode.config import ServerConfig
from crowdnode.protocol import (
    Action,
    FileIOError,
    NotFoundError,
    ProcessError,
    ProtocolError,
    Request,
    UnknownActionError,
    encode_response,
)

logger = logging.getLogger("crowdnode.actions")

Response = dict[str, Any] | None
Handler = Callable[[Request, ServerConfig], Awaitable[Response]]


def resolve_path(config: ServerConfig, filename: str) -> str:
    return config.base_dir + filename


async def push(request: Request, config: ServerConfig) -> Response:
    """Store a base64 payload under the base directory."""
    filename = request.require_str("filename")
    content_b64 = request.require_str("file_content_base64")

    if content_b64:
        content = codec.decode(content_b64)
    else:
        logger.warning("File content is empty, nothing to decode")
        content = b""

    path = resolve_path(config, filename)
    try:
        with open(path, "wb") as f:
            f.write(content)
    except (OSError, ValueError) as e:
        logger.error("Could not write %s: %s", path, e)
        raise FileIOError(f"Could not write file at path: {path}") from e

    logger.info("File saved to %s (%d bytes)", path, len(content))
    return encode_response(compileUUID=new_opaque_id())


async def pull(request: Request, config: ServerConfig) -> Response:
    """Return the base64 content of a file under the base directory."""
    filename = request.require_str("filename")
    path = resolve_path(config, filename)
    try:
        with open(path, "rb") as f:
            content = f.read()
    except FileNotFoundError as e:
        raise NotFoundError(f"File not found at path: {path}") from e
    except (OSError, ValueError) as e:
        logger.error("Could not read %s: %s", path, e)
        raise FileIOError(f"Could not read file at path: {path}") from e

    logger.debug("Read %s (%d bytes)", path, len(content))
    return encode_response(
        filename=filename,
        file_content_base64=codec.encode(content),
    )


async def run_command(cmd: str, timeout: float | None = None) -> tuple[int, str, str]:
    """Run a command line through the system shell.

    Returns (exit status, stdout, stderr) from a single invocation.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (OSError, ValueError) as e:
        raise ProcessError(f"Failed to run command: {cmd}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()
        raise ProcessError(f"Command timed out after {timeout}s: {cmd}")

    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def shell(request: Request, config: ServerConfig) -> Response:
    """Execute ``cmd`` and report its exit status and output."""
    cmd = request.require("cmd")
    if not isinstance(cmd, str) or not cmd:
        raise ProtocolError("Invalid action JSON format for message: cmd must be a non-empty string")
    if not config.allow_shell:
        raise ProcessError("shell action is disabled on this node")

    logger.info("Running shell command: %s", cmd)
    return_code, stdout, stderr = await run_command(
        cmd, timeout=config.shell_timeout or None
    )
    logger.info("Command exited with status %d", return_code)
    return encode_response(return_code=return_code, stdout=stdout, stderr=stderr)


async def state(request: Request, config: ServerConfig) -> Response:
    # No job registry: the run id is accepted and nothing is looked up.
    run_uuid = request.require("runUUID")
    logger.debug("State requested for runUUID %s", run_uuid)
    return encode_response()


async def clear(request: Request, config: ServerConfig) -> Response:
    logger.debug("Clear requested; nothing to clean up")
    return encode_response()


async def shutdown(request: Request, config: ServerConfig) -> Response:
    logger.info("Shutdown requested; closing connection without a response")
    return None


HANDLERS: dict[Action, Handler] = {
    Action.PUSH: push,
    Action.PULL: pull,
    Action.SHELL: shell,
    Action.STATE: state,
    Action.CLEAR: clear,
    Action.SHUTDOWN: shutdown,
}


async def dispatch(request: Request, config: ServerConfig) -> Response:
    """Run the handler named by ``action``.

    Returns the response object, or None when the connection should be
    closed without writing anything.
    """
    action = request.require("action")
    try:
        handler = HANDLERS[Action(action)]
    except (ValueError, TypeError):
        raise UnknownActionError("unknown action") from None
    logger.info("Action: %s", action)
    return await handler(request, config)
