"""TCP server: reads one request per connection, answers, and closes."""

import asyncio
import logging
from typing import Any

from crowdnode import actions, auth, protocol
from crowdnode.config import ServerConfig
from crowdnode.framing import read_request

logger = logging.getLogger("crowdnode.server")


async def write_response(writer: asyncio.StreamWriter, response: dict[str, Any]) -> None:
    """Serialize a response and flush all of it to the peer."""
    writer.write(protocol.serialize(response))
    await writer.drain()


class CrowdnodeServer:
    """Serves push/pull/shell requests against a base directory."""

    def __init__(self, config: ServerConfig):
        self.config = config
        self._server: asyncio.Server | None = None

    async def handle_request(self, raw: bytes) -> dict[str, Any] | None:
        """Run decode, auth and dispatch for one raw request.

        Errors meant for the client come back as error responses. None means
        the connection must be closed with nothing written.
        """
        try:
            request = protocol.decode_request(raw)
            auth.authenticate(request, self.config.secret_key)
            return await actions.dispatch(request, self.config)
        except protocol.CrowdnodeError as e:
            logger.warning("Request failed (return %s): %s", e.return_code.value, e.message)
            return protocol.error_from_exception(e)
        except Exception:
            logger.exception("Unhandled error while processing request")
            return protocol.error_response(
                protocol.ReturnCode.ERROR, "internal server error"
            )

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a single accepted connection from read to close."""
        peer = writer.get_extra_info("peername")
        remote = peer[0] if peer else "unknown"
        logger.info("Connection from %s", remote)

        try:
            try:
                raw = await read_request(
                    reader,
                    self.config.chunk_size,
                    timeout=self.config.read_timeout or None,
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out reading request from %s", remote)
                return
            except OSError as e:
                logger.error("Error reading from %s: %s", remote, e)
                return
            logger.debug("Request length from %s: %d bytes", remote, len(raw))

            response = await self.handle_request(raw)
            if response is None:
                return
            try:
                await write_response(writer, response)
            except OSError as e:
                logger.error("Error writing response to %s: %s", remote, e)
                return
            logger.info("Request from %s completed (return %s)", remote, response["return"])
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def start(self) -> asyncio.Server:
        """Bind the listening socket and start accepting connections."""
        self._server = await asyncio.start_server(
            self.handle_connection,
            self.config.host,
            self.config.port,
        )
        return self._server

    async def close(self) -> None:
        """Stop accepting connections."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    @property
    def sockets(self) -> tuple:
        return tuple(self._server.sockets) if self._server else ()

    async def serve(self) -> None:
        """Start the server and run until cancelled."""
        logger.info(
            "Starting crowdnode server on %s:%d",
            self.config.host,
            self.config.port,
        )
        logger.info("Base directory: %s", self.config.base_dir)
        if not self.config.secret_key:
            logger.warning("No secret key configured; requests are not authenticated")
        if self.config.allow_shell:
            logger.warning(
                "Shell action enabled: clients holding the secret key can run "
                "arbitrary commands as this user"
            )

        server = await self.start()
        async with server:
            logger.info("Server is ready. Waiting for connections...")
            await server.serve_forever()
