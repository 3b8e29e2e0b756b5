"""End-to-end tests for the server and client protocol."""

import asyncio
import json

import pytest

from crowdnode.client import build_request, send_request
from crowdnode.config import ServerConfig
from crowdnode.server import CrowdnodeServer


@pytest.fixture()
def server_config(tmp_path):
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        path_to_files=str(tmp_path),
        secret_key="S",
        read_timeout=5,
    )


async def _start(config):
    server = CrowdnodeServer(config)
    await server.start()
    port = server.sockets[0].getsockname()[1]
    return server, port


async def _stop(server):
    await server.close()


async def _raw_exchange(port, payload, half_close=True):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    if half_close:
        writer.write_eof()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data


@pytest.mark.asyncio
async def test_push_then_pull(server_config, tmp_path):
    server, port = await _start(server_config)
    try:
        resp = await send_request("127.0.0.1", port, build_request(
            "push", "S", filename="a.txt", file_content_base64="aGVsbG8=",
        ))
        assert resp["return"] == "0"
        assert resp["compileUUID"]
        assert (tmp_path / "a.txt").read_bytes() == b"hello"

        resp = await send_request(
            "127.0.0.1", port, build_request("pull", "S", filename="a.txt")
        )
        assert resp == {
            "return": "0",
            "filename": "a.txt",
            "file_content_base64": "aGVsbG8=",
        }
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_form_encoded_request(server_config):
    server, port = await _start(server_config)
    try:
        resp = await send_request(
            "127.0.0.1", port,
            build_request("shell", "S", cmd="echo hi"),
            form=True,
        )
        assert resp["return_code"] == 0
        assert "hi\n" in resp["stdout"]
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_client_that_keeps_socket_open_gets_answer(server_config):
    server, port = await _start(server_config)
    try:
        payload = json.dumps({"secretkey": "S", "action": "clear"}).encode()
        data = await _raw_exchange(port, payload, half_close=False)
        assert json.loads(data) == {"return": "0"}
    finally:
        await _stop(server)


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["push", "pull", "shell", "state", "clear", "shutdown", "x"])
async def test_missing_secret_key(server_config, action):
    server, port = await _start(server_config)
    try:
        resp = await send_request("127.0.0.1", port, {"action": action})
        assert resp == {"return": "3", "error": "secret keys do not match"}
    finally:
        await _stop(server)


@pytest.mark.asyncio
@pytest.mark.parametrize("secret", ["wrong", "SS", "", "s"])
async def test_wrong_secret_key(server_config, secret):
    server, port = await _start(server_config)
    try:
        resp = await send_request(
            "127.0.0.1", port, build_request("clear", secret)
        )
        assert resp["return"] == "3"
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_pull_missing_file(server_config, tmp_path):
    server, port = await _start(server_config)
    try:
        resp = await send_request(
            "127.0.0.1", port, build_request("pull", "S", filename="missing.txt")
        )
        assert resp["return"] == "1"
        assert str(tmp_path / "missing.txt") in resp["error"]
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_unknown_action(server_config):
    server, port = await _start(server_config)
    try:
        resp = await send_request("127.0.0.1", port, build_request("reboot", "S"))
        assert resp == {"return": "1", "error": "unknown action"}
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_invalid_json(server_config):
    server, port = await _start(server_config)
    try:
        data = await _raw_exchange(port, b"{not json")
        resp = json.loads(data)
        assert resp["return"] == "1"
        assert "error" in resp
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_shutdown_closes_silently(server_config):
    server, port = await _start(server_config)
    try:
        resp = await send_request("127.0.0.1", port, build_request("shutdown", "S"))
        assert resp is None

        # The listener keeps serving after a shutdown request.
        resp = await send_request("127.0.0.1", port, build_request("clear", "S"))
        assert resp == {"return": "0"}
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_auth_disabled_without_server_secret(tmp_path):
    config = ServerConfig(host="127.0.0.1", port=0, path_to_files=str(tmp_path))
    server, port = await _start(config)
    try:
        resp = await send_request("127.0.0.1", port, build_request("clear", "anything"))
        assert resp == {"return": "0"}
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_handle_request_never_raises_client_errors(server_config):
    server = CrowdnodeServer(server_config)
    resp = await server.handle_request(b'{"secretkey": "S", "action": "push"}')
    assert resp["return"] == "1"
    assert "filename" in resp["error"]


@pytest.mark.asyncio
@pytest.mark.parametrize("request_fields", [
    {"action": "push", "filename": "a\x00b", "file_content_base64": "aGVsbG8="},
    {"action": "pull", "filename": "a\x00b"},
    {"action": "pull", "filename": "\ud800"},
    {"action": "shell", "cmd": "echo \x00hi"},
])
async def test_unusable_strings_get_error_response(server_config, request_fields):
    server, port = await _start(server_config)
    try:
        resp = await send_request(
            "127.0.0.1", port, {"secretkey": "S", **request_fields}
        )
        assert resp["return"] == "1"
        assert resp["error"]
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_malformed_json_answered_without_half_close(server_config):
    server, port = await _start(server_config)
    try:
        data = await _raw_exchange(
            port, b'{"secretkey":"S","action":"clear",}', half_close=False
        )
        assert json.loads(data) == {
            "return": "1",
            "error": "Invalid action JSON format for message",
        }
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_truncated_request_answered_after_read_timeout(tmp_path):
    config = ServerConfig(
        host="127.0.0.1", port=0, path_to_files=str(tmp_path),
        secret_key="S", read_timeout=1,
    )
    server, port = await _start(config)
    try:
        data = await _raw_exchange(port, b'{"secretkey":"S","act', half_close=False)
        assert json.loads(data)["return"] == "1"
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_deeply_nested_json(server_config):
    server, port = await _start(server_config)
    try:
        body = (
            b'{"secretkey":"S","action":"clear","x":'
            + b"[" * 100000 + b"]" * 100000 + b"}"
        )
        data = await _raw_exchange(port, body, half_close=False)
        assert json.loads(data)["return"] == "1"
    finally:
        await _stop(server)


@pytest.mark.asyncio
async def test_unexpected_failure_still_answers(server_config, monkeypatch):
    async def broken_dispatch(request, config):
        raise RuntimeError("boom")

    monkeypatch.setattr("crowdnode.actions.dispatch", broken_dispatch)
    server = CrowdnodeServer(server_config)
    resp = await server.handle_request(b'{"secretkey": "S", "action": "clear"}')
    assert resp == {"return": "1", "error": "internal server error"}
