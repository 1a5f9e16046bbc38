from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import Any, TypeVar

import msgspec

from .protocol import DEFAULT_PORT, MAX_CLIENTS, PUNCH_INTERVAL_MS, PUNCH_MAX_ATTEMPTS, PeerAddr

DEFAULT_TICK_MS = 10

_T = TypeVar("_T")


class ConfigError(ValueError):
    pass


def _check_port(name: str, port: int, *, allow_zero: bool) -> None:
    low = 0 if allow_zero else 1
    if not (low <= int(port) <= 65535):
        raise ConfigError(f"{name} must be in {low}..65535, got {port}")


def _check_positive(name: str, value: int) -> None:
    if int(value) < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    bind_host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_clients: int = MAX_CLIENTS
    tick_ms: int = DEFAULT_TICK_MS

    def __post_init__(self) -> None:
        _check_port("port", self.port, allow_zero=True)
        _check_positive("max_clients", self.max_clients)
        _check_positive("tick_ms", self.tick_ms)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    server_host: str = "127.0.0.1"
    server_port: int = DEFAULT_PORT
    bind_host: str = "0.0.0.0"
    bind_port: int = 0
    # Unset means punches share the control socket, whose mapping the server observed.
    punch_host: str = "0.0.0.0"
    punch_port: int | None = None
    punch_interval_ms: int = PUNCH_INTERVAL_MS
    punch_max_attempts: int = PUNCH_MAX_ATTEMPTS
    tick_ms: int = DEFAULT_TICK_MS

    def __post_init__(self) -> None:
        if not str(self.server_host).strip():
            raise ConfigError("server_host is required")
        _check_port("server_port", self.server_port, allow_zero=False)
        _check_port("bind_port", self.bind_port, allow_zero=True)
        if self.punch_port is not None:
            _check_port("punch_port", self.punch_port, allow_zero=True)
        _check_positive("punch_interval_ms", self.punch_interval_ms)
        _check_positive("punch_max_attempts", self.punch_max_attempts)
        _check_positive("tick_ms", self.tick_ms)

    @property
    def server_addr(self) -> PeerAddr:
        return (str(self.server_host), int(self.server_port))

    @property
    def punch_addr(self) -> PeerAddr | None:
        if self.punch_port is None:
            return None
        return (str(self.punch_host), int(self.punch_port))


def load_config_table(path: Path | None, section: str) -> dict[str, Any]:
    """Read the `[section]` table of a TOML config file; a missing path yields `{}`."""
    if path is None:
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {path}: {exc}") from exc
    table = raw.get(section, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{section}] in {path} must be a table")
    return dict(table)


def _build(kind: type[_T], path: Path | None, section: str, overrides: dict[str, Any]) -> _T:
    data = load_config_table(path, section)
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return msgspec.convert(data, type=kind, strict=False)
    except msgspec.ValidationError as exc:
        raise ConfigError(f"invalid [{section}] config: {exc}") from exc


def load_server_config(path: Path | None = None, **overrides: Any) -> ServerConfig:
    return _build(ServerConfig, path, "server", overrides)


def load_client_config(path: Path | None = None, **overrides: Any) -> ClientConfig:
    return _build(ClientConfig, path, "client", overrides)
