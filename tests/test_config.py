from __future__ import annotations

from pathlib import Path

import pytest

from punchthrough.config import ClientConfig, ConfigError, ServerConfig, load_client_config, load_server_config
from punchthrough.paths import RUNTIME_DIR_ENV, default_runtime_dir


def test_defaults_without_file() -> None:
    assert load_server_config(None) == ServerConfig()
    cfg = load_client_config(None)
    assert cfg == ClientConfig()
    assert cfg.server_addr == ("127.0.0.1", 5000)
    assert cfg.punch_addr is None


def test_server_table_is_read_and_cli_overrides_win(tmp_path: Path) -> None:
    path = tmp_path / "punch.toml"
    path.write_text('[server]\nbind_host = "127.0.0.1"\nport = 6000\nmax_clients = 8\n', encoding="utf-8")

    cfg = load_server_config(path, port=7000, max_clients=None)

    assert cfg == ServerConfig(bind_host="127.0.0.1", port=7000, max_clients=8)


def test_client_table_sets_punch_socket(tmp_path: Path) -> None:
    path = tmp_path / "punch.toml"
    path.write_text(
        '[client]\nserver_host = "rendezvous.example"\npunch_host = "10.0.0.2"\npunch_port = 41000\n',
        encoding="utf-8",
    )

    cfg = load_client_config(path)

    assert cfg.server_addr == ("rendezvous.example", 5000)
    assert cfg.punch_addr == ("10.0.0.2", 41000)


def test_out_of_range_port_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "punch.toml"
    path.write_text("[client]\nserver_port = 70000\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="server_port"):
        load_client_config(path)


def test_wrong_type_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "punch.toml"
    path.write_text('[server]\nmax_clients = "lots"\n', encoding="utf-8")

    with pytest.raises(ConfigError, match=r"\[server\]"):
        load_server_config(path)


def test_unreadable_and_invalid_files_raise_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="cannot read"):
        load_server_config(tmp_path / "missing.toml")

    bad = tmp_path / "bad.toml"
    bad.write_text("[server\nport = ", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid TOML"):
        load_server_config(bad)

    scalar = tmp_path / "scalar.toml"
    scalar.write_text("server = 3\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must be a table"):
        load_server_config(scalar)


def test_direct_construction_validates() -> None:
    with pytest.raises(ConfigError):
        ServerConfig(max_clients=0)
    with pytest.raises(ConfigError):
        ClientConfig(server_host="  ")
    with pytest.raises(ConfigError):
        ClientConfig(punch_interval_ms=0)


def test_runtime_dir_env_override(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv(RUNTIME_DIR_ENV, str(tmp_path / "rt"))

    assert default_runtime_dir() == tmp_path / "rt"


def test_runtime_dir_defaults_to_user_data_dir(monkeypatch) -> None:
    monkeypatch.delenv(RUNTIME_DIR_ENV, raising=False)

    path = default_runtime_dir()

    assert "punchthrough" in path.parts
