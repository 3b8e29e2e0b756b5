"""CLI entry point for crowdnode."""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any

from crowdnode import __version__
from crowdnode.config import Config, ServerConfig, legacy_config_file


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="crowdnode",
        description="Remote execution node for experiment crowdsourcing",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override configuration directory",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # ── init ──────────────────────────────────────────────────────────
    init_p = sub.add_parser("init", help="Write a node configuration")
    init_p.add_argument(
        "--port", type=int, default=3333, help="Server port (default: 3333)"
    )
    init_p.add_argument(
        "--path-to-files",
        default="/tmp/",
        help="Base directory for pushed and pulled files (default: /tmp/)",
    )
    init_p.add_argument(
        "--secret-key",
        default=None,
        help="Shared secret key (generated if omitted)",
    )
    init_p.add_argument(
        "--no-shell",
        action="store_true",
        help="Disable the shell action",
    )

    # ── server ────────────────────────────────────────────────────────
    server_p = sub.add_parser("server", help="Start the crowdnode server")
    server_p.add_argument(
        "--host", default=None, help="Override bind address"
    )
    server_p.add_argument(
        "--port", type=int, default=None, help="Override port"
    )
    server_p.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    # ── client commands ───────────────────────────────────────────────
    client_args = argparse.ArgumentParser(add_help=False)
    client_args.add_argument("--host", default=None, help="Server hostname or IP")
    client_args.add_argument("--port", type=int, default=None, help="Server port")
    client_args.add_argument(
        "--secret-key", default=None, help="Shared secret key"
    )
    client_args.add_argument(
        "--form",
        action="store_true",
        help="Send the request as a URL-encoded ck_json= body",
    )

    push_p = sub.add_parser(
        "push", parents=[client_args], help="Upload a file to a node"
    )
    push_p.add_argument("file", type=Path, help="Local file to upload")
    push_p.add_argument(
        "--name", default=None, help="Remote file name (default: local name)"
    )

    pull_p = sub.add_parser(
        "pull", parents=[client_args], help="Download a file from a node"
    )
    pull_p.add_argument("name", help="Remote file name")
    pull_p.add_argument(
        "--output", type=Path, default=None, help="Local destination"
    )

    shell_p = sub.add_parser(
        "shell", parents=[client_args], help="Run a command on a node"
    )
    shell_p.add_argument("cmd", nargs="+", help="Command line to execute")

    state_p = sub.add_parser(
        "state", parents=[client_args], help="Query the state of a run"
    )
    state_p.add_argument("run_uuid", help="Run identifier")

    sub.add_parser("clear", parents=[client_args], help="Ask a node to clear")
    sub.add_parser(
        "shutdown", parents=[client_args], help="Send a shutdown request"
    )

    args = parser.parse_args(argv)
    config_dir = Config.config_dir(args.config_dir)

    if args.command == "init":
        _cmd_init(args, config_dir)
    elif args.command == "server":
        _cmd_server(args, config_dir)
    else:
        _cmd_client(args, config_dir)


# ── Command implementations ──────────────────────────────────────────────


def _cmd_init(args: argparse.Namespace, config_dir: Path) -> None:
    from crowdnode.auth import generate_secret_key

    secret_key = args.secret_key or generate_secret_key()

    config = Config()
    config = dataclasses.replace(
        config,
        server=dataclasses.replace(
            config.server,
            port=args.port,
            path_to_files=args.path_to_files,
            secret_key=secret_key,
            allow_shell=not args.no_shell,
        ),
        client=dataclasses.replace(
            config.client,
            server_port=args.port,
            secret_key=secret_key,
        ),
    )

    config_file = config.save(config_dir)
    print(f"Configuration saved to: {config_file}")
    print(f"  Port:          {config.server.port}")
    print(f"  Base dir:      {config.server.base_dir}")
    print(f"  Secret key:    {secret_key}")
    print(f"  Shell action:  {'enabled' if config.server.allow_shell else 'disabled'}")
    print(f"\nTo start the server:  crowdnode server")


def _load_server_config(config_dir: Path) -> ServerConfig:
    """Pick the config file, a ck-crowdnode legacy file, or defaults.

    The defaults get a freshly generated secret key, printed once to stdout.
    """
    from crowdnode.auth import generate_secret_key

    logger = logging.getLogger("crowdnode.cli")
    config_file = Config.config_file(config_dir)
    if config_file.exists():
        return Config.load(config_dir).server

    legacy = Config.load_legacy()
    if legacy is not None:
        logger.info("Using ck-crowdnode configuration at %s", legacy_config_file())
        return legacy.server

    server_config = dataclasses.replace(
        Config().server, secret_key=generate_secret_key()
    )
    logger.warning(
        "No configuration at %s; using defaults with a generated secret key",
        config_file,
    )
    print(f"Generated secret key: {server_config.secret_key}")
    return server_config


def _cmd_server(args: argparse.Namespace, config_dir: Path) -> None:
    from crowdnode.server import CrowdnodeServer

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    server_config = _load_server_config(config_dir)

    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    server_config = dataclasses.replace(server_config, **overrides)

    server = CrowdnodeServer(server_config)

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        print("\nServer stopped.")


def _build_client_request(args: argparse.Namespace, secret_key: str) -> dict[str, Any]:
    from crowdnode import codec
    from crowdnode.client import build_request

    if args.command == "push":
        try:
            content = args.file.read_bytes()
        except OSError as e:
            print(f"Cannot read {args.file}: {e}", file=sys.stderr)
            sys.exit(1)
        return build_request(
            "push",
            secret_key,
            filename=args.name or args.file.name,
            file_content_base64=codec.encode(content),
        )
    if args.command == "pull":
        return build_request("pull", secret_key, filename=args.name)
    if args.command == "shell":
        return build_request("shell", secret_key, cmd=" ".join(args.cmd))
    if args.command == "state":
        return build_request(
            "state", secret_key, parameters={"runUUID": args.run_uuid}
        )
    return build_request(args.command, secret_key)


def _cmd_client(args: argparse.Namespace, config_dir: Path) -> None:
    from crowdnode import codec
    from crowdnode.client import send_request
    from crowdnode.protocol import CodecError, ReturnCode

    cc = Config.load(config_dir).client
    host = args.host or cc.server_host
    port = args.port or cc.server_port
    secret_key = args.secret_key if args.secret_key is not None else cc.secret_key

    request = _build_client_request(args, secret_key)

    try:
        response = asyncio.run(send_request(host, port, request, form=args.form))
    except ConnectionRefusedError:
        print(f"Connection refused: {host}:{port}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError, asyncio.TimeoutError) as e:
        print(f"Request failed: {e}", file=sys.stderr)
        sys.exit(1)

    if response is None:
        print("Connection closed by node without a response.")
        return

    if response.get("return") != ReturnCode.OK.value:
        print(
            f"Error (return {response.get('return')}): {response.get('error', 'unknown error')}",
            file=sys.stderr,
        )
        sys.exit(1)

    if args.command == "pull":
        try:
            content = codec.decode(response.get("file_content_base64", ""))
        except CodecError as e:
            print(f"Invalid file content in response: {e.message}", file=sys.stderr)
            sys.exit(1)
        output = args.output or Path(response.get("filename", args.name)).name
        Path(output).write_bytes(content)
        print(f"Saved {len(content)} bytes to {output}")
    elif args.command == "push":
        print(f"compileUUID: {response['compileUUID']}")
    elif args.command == "shell":
        sys.stdout.write(response.get("stdout", ""))
        sys.stderr.write(response.get("stderr", ""))
        sys.exit(response.get("return_code", 0))
    else:
        print("OK")


if __name__ == "__main__":
    main()
