"""Configuration management for crowdnode."""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any


def _default_config_dir() -> Path:
    """Get the default configuration directory."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        base = Path(xdg)
    else:
        base = Path.home() / ".config"
    return base / "crowdnode"


def legacy_config_file() -> Path:
    """Location used by the original ck-crowdnode server."""
    return Path.home() / ".ck-crowdnode" / "ck-crowdnode-config.json"


_LEGACY_KEYS = {
    "port": ("port",),
    "path_to_files": ("path_to_files", "pathToFiles"),
    "secret_key": ("secret_key", "secretKey"),
}


def _with_trailing_sep(path: str) -> str:
    return path if path.endswith(os.sep) else path + os.sep


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3333
    path_to_files: str = "/tmp/"
    secret_key: str = ""  # empty disables the secret check

    chunk_size: int = 1024
    read_timeout: int = 30  # seconds, 0 disables
    allow_shell: bool = True
    shell_timeout: int = 0  # seconds, 0 disables

    @property
    def base_dir(self) -> str:
        """Directory all file actions resolve against, with trailing separator."""
        expanded = os.path.expanduser(os.path.expandvars(self.path_to_files))
        return _with_trailing_sep(os.path.abspath(expanded))


@dataclass(frozen=True)
class ClientConfig:
    server_host: str = "localhost"
    server_port: int = 3333
    secret_key: str = ""


@dataclass(frozen=True)
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "Config":
        """Load configuration from disk, or return defaults."""
        config_file = cls.config_file(config_dir)
        if not config_file.exists():
            return cls()
        data = json.loads(config_file.read_text())
        server_data = data.get("server", {})
        client_data = data.get("client", {})
        return cls(
            server=ServerConfig(**{
                k: v for k, v in server_data.items()
                if k in ServerConfig.__dataclass_fields__
            }),
            client=ClientConfig(**{
                k: v for k, v in client_data.items()
                if k in ClientConfig.__dataclass_fields__
            }),
        )

    @classmethod
    def load_legacy(cls, path: Path | None = None) -> "Config | None":
        """Read a flat ck-crowdnode config file, if one exists.

        Accepts the keys ``port``, ``path_to_files`` and ``secret_key`` (or
        their camelCase spellings) at the top level.
        """
        path = path or legacy_config_file()
        if not path.exists():
            return None
        data = json.loads(path.read_text())
        server: dict[str, Any] = {}
        for key, aliases in _LEGACY_KEYS.items():
            for alias in aliases:
                if alias in data:
                    server[key] = data[alias]
                    break
        return cls(
            server=ServerConfig(**server),
            client=ClientConfig(
                server_port=server.get("port", ClientConfig.server_port),
                secret_key=server.get("secret_key", ""),
            ),
        )

    def save(self, config_dir: Path | None = None) -> Path:
        """Save configuration to disk."""
        config_file = self.config_file(config_dir)
        config_file.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "server": asdict(self.server),
            "client": asdict(self.client),
        }
        config_file.write_text(json.dumps(data, indent=2) + "\n")
        config_file.chmod(0o600)
        return config_file

    @staticmethod
    def config_dir(override: Path | None = None) -> Path:
        return override or _default_config_dir()

    @staticmethod
    def config_file(config_dir: Path | None = None) -> Path:
        return (config_dir or _default_config_dir()) / "config.json"
