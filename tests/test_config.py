"""Tests for configuration management."""

import dataclasses
import os
import tempfile
from pathlib import Path

import pytest

from crowdnode.config import Config, ServerConfig


def test_save_and_load():
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        cfg = Config()
        cfg = dataclasses.replace(
            cfg,
            server=dataclasses.replace(
                cfg.server, port=9999, secret_key="s3cret", allow_shell=False
            ),
        )
        cfg.save(tmp)

        loaded = Config.load(tmp)
        assert loaded.server.port == 9999
        assert loaded.server.secret_key == "s3cret"
        assert loaded.server.allow_shell is False


def test_defaults():
    cfg = Config()
    assert cfg.server.port == 3333
    assert cfg.server.path_to_files == "/tmp/"
    assert cfg.server.secret_key == ""
    assert cfg.server.chunk_size == 1024
    assert cfg.client.server_port == 3333


def test_load_missing_returns_defaults():
    with tempfile.TemporaryDirectory() as tmp:
        cfg = Config.load(Path(tmp))
        assert cfg.server.port == 3333


def test_load_ignores_unknown_keys(tmp_path):
    (tmp_path / "config.json").write_text(
        '{"server": {"port": 4444, "bogus": 1}, "client": {}}'
    )
    cfg = Config.load(tmp_path)
    assert cfg.server.port == 4444


def test_config_file_permissions(tmp_path):
    path = Config().save(tmp_path)
    assert oct(path.stat().st_mode & 0o777) == "0o600"


def test_server_config_is_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        ServerConfig().port = 1


def test_base_dir_has_trailing_separator(tmp_path):
    cfg = ServerConfig(path_to_files=str(tmp_path))
    assert cfg.base_dir == str(tmp_path) + os.sep


def test_base_dir_expands_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg = ServerConfig(path_to_files="$HOME/files")
    assert cfg.base_dir == os.path.join(str(tmp_path), "files") + os.sep


def test_xdg_config_home(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert Config.config_dir() == tmp_path / "crowdnode"


def test_load_legacy_camel_case_keys(tmp_path):
    path = tmp_path / "ck-crowdnode-config.json"
    path.write_text('{"port": 4000, "pathToFiles": "/data", "secretKey": "k"}')
    cfg = Config.load_legacy(path)
    assert cfg.server.port == 4000
    assert cfg.server.path_to_files == "/data"
    assert cfg.server.secret_key == "k"
    assert cfg.client.server_port == 4000


def test_load_legacy_missing_file(tmp_path):
    assert Config.load_legacy(tmp_path / "absent.json") is None
