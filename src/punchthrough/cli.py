from __future__ import annotations

from pathlib import Path
import threading
import time

import typer

from .config import ClientConfig, ConfigError, ServerConfig, load_client_config, load_server_config
from .debug_log import close_net_debug_log, init_net_debug_log
from .paths import default_runtime_dir
from .protocol import DEFAULT_PORT, PROTOCOL_ID
from .registry import normalize_lobby_code
from .runtime import PunchthroughClient
from .server import RendezvousServer
from .types import ClientEvent, ClientIntent, Failed, HostLobby, HostSuccess, JoinAccepted, JoinLobby, Success


app = typer.Typer(add_completion=False)

_BASE_DIR_HELP = "base path for runtime files (default: per-user OS data dir; override with PUNCHTHROUGH_RUNTIME_DIR)"


def _start_trace(*, enabled: bool, base_dir: Path, role: str, host: str, port: int) -> None:
    if not enabled:
        return
    path = init_net_debug_log(base_dir=base_dir, role=role, host=host, port=port, protocol_id=PROTOCOL_ID)
    typer.echo(f"trace log: {path}")


def _client_config(
    config: Path | None,
    *,
    server: str | None,
    server_port: int | None,
    bind: str | None,
    bind_port: int | None,
    punch_port: int | None,
) -> ClientConfig:
    try:
        return load_client_config(
            config,
            server_host=server,
            server_port=server_port,
            bind_host=bind,
            bind_port=bind_port,
            punch_port=punch_port,
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc


def _run_server(cfg: ServerConfig) -> int:
    server = RendezvousServer(cfg)
    stop = threading.Event()
    typer.echo(f"rendezvous server listening on {cfg.bind_host}:{cfg.port}")
    try:
        server.serve_forever(stop)
    except KeyboardInterrupt:
        stop.set()
        typer.echo("shutting down")
    except OSError as exc:
        typer.echo(f"server error: {exc}", err=True)
        return 1
    return 0


def _report(event: ClientEvent) -> int | None:
    if isinstance(event, HostSuccess):
        typer.echo(f"hosting lobby {event.lobby}; waiting for a peer to join")
        return None
    if isinstance(event, JoinAccepted):
        typer.echo(f"joined lobby {event.lobby}; punching")
        return None
    if isinstance(event, Success):
        local, target = event.local_addr, event.target_addr
        typer.echo(f"direct link open: {local[0]}:{local[1]} <-> {target[0]}:{target[1]}")
        return 0
    if isinstance(event, Failed):
        typer.echo(f"failed: {event.reason}", err=True)
        return 1
    return None


def _run_client(cfg: ClientConfig, intent: ClientIntent, *, timeout_s: float) -> int:
    client = PunchthroughClient(cfg)
    try:
        client.open()
    except OSError as exc:
        where = f"{cfg.bind_host}:{cfg.bind_port}"
        if cfg.punch_addr is not None:
            where += f" (punch {cfg.punch_host}:{cfg.punch_port})"
        typer.echo(f"could not open sockets on {where}: {exc}", err=True)
        return 1

    tick_s = float(cfg.tick_ms) / 1000.0
    deadline = time.monotonic() + float(timeout_s)
    try:
        client.request(intent)
        while time.monotonic() < deadline:
            client.update()
            for event in client.poll_events():
                code = _report(event)
                if code is not None:
                    return code
            time.sleep(tick_s)
    except KeyboardInterrupt:
        typer.echo("interrupted", err=True)
        return 1
    finally:
        client.close()
    typer.echo(f"timed out after {timeout_s:g}s (state: {client.state.name.lower()})", err=True)
    return 1


@app.command("server")
def cmd_server(
    bind: str | None = typer.Option(None, "--bind", help="bind address (default: 0.0.0.0)"),
    port: int | None = typer.Option(None, "--port", min=0, max=65535, help=f"UDP port (default: {DEFAULT_PORT})"),
    max_clients: int | None = typer.Option(None, "--max-clients", min=1, help="connected client cap"),
    config: Path | None = typer.Option(None, "--config", help="TOML file with a [server] table"),
    trace: bool = typer.Option(False, "--trace", help="write a net trace log under base-dir"),
    base_dir: Path = typer.Option(default_runtime_dir(), "--base-dir", "--runtime-dir", help=_BASE_DIR_HELP),
) -> None:
    """Run the rendezvous server."""
    try:
        cfg = load_server_config(config, bind_host=bind, port=port, max_clients=max_clients)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    _start_trace(enabled=trace, base_dir=base_dir, role="server", host=cfg.bind_host, port=cfg.port)
    try:
        code = _run_server(cfg)
    finally:
        close_net_debug_log()
    raise typer.Exit(code)


@app.command("host")
def cmd_host(
    server: str | None = typer.Option(None, "--server", help="rendezvous server host (default: 127.0.0.1)"),
    server_port: int | None = typer.Option(None, "--server-port", min=1, max=65535, help="rendezvous server port"),
    bind: str | None = typer.Option(None, "--bind", help="local address for the server link"),
    bind_port: int | None = typer.Option(None, "--bind-port", min=0, max=65535, help="local port for the server link"),
    punch_port: int | None = typer.Option(None, "--punch-port", min=0, max=65535, help="local port punches leave from"),
    timeout: float = typer.Option(300.0, "--timeout", min=1.0, help="seconds to wait for a peer"),
    config: Path | None = typer.Option(None, "--config", help="TOML file with a [client] table"),
    trace: bool = typer.Option(False, "--trace", help="write a net trace log under base-dir"),
    base_dir: Path = typer.Option(default_runtime_dir(), "--base-dir", "--runtime-dir", help=_BASE_DIR_HELP),
) -> None:
    """Open a lobby and wait for a peer to join it."""
    cfg = _client_config(
        config, server=server, server_port=server_port, bind=bind, bind_port=bind_port, punch_port=punch_port
    )
    _start_trace(enabled=trace, base_dir=base_dir, role="host", host=cfg.server_host, port=cfg.server_port)
    try:
        code = _run_client(cfg, HostLobby(), timeout_s=float(timeout))
    finally:
        close_net_debug_log()
    raise typer.Exit(code)


@app.command("join")
def cmd_join(
    lobby: str = typer.Argument(..., help="lobby code shared by the host"),
    server: str | None = typer.Option(None, "--server", help="rendezvous server host (default: 127.0.0.1)"),
    server_port: int | None = typer.Option(None, "--server-port", min=1, max=65535, help="rendezvous server port"),
    bind: str | None = typer.Option(None, "--bind", help="local address for the server link"),
    bind_port: int | None = typer.Option(None, "--bind-port", min=0, max=65535, help="local port for the server link"),
    punch_port: int | None = typer.Option(None, "--punch-port", min=0, max=65535, help="local port punches leave from"),
    timeout: float = typer.Option(30.0, "--timeout", min=1.0, help="seconds to wait for the handshake"),
    config: Path | None = typer.Option(None, "--config", help="TOML file with a [client] table"),
    trace: bool = typer.Option(False, "--trace", help="write a net trace log under base-dir"),
    base_dir: Path = typer.Option(default_runtime_dir(), "--base-dir", "--runtime-dir", help=_BASE_DIR_HELP),
) -> None:
    """Join a lobby by code and punch through to its host."""
    code_text = normalize_lobby_code(lobby)
    if not code_text:
        raise typer.BadParameter("lobby code is required", param_hint="LOBBY")
    cfg = _client_config(
        config, server=server, server_port=server_port, bind=bind, bind_port=bind_port, punch_port=punch_port
    )
    _start_trace(enabled=trace, base_dir=base_dir, role="join", host=cfg.server_host, port=cfg.server_port)
    try:
        code = _run_client(cfg, JoinLobby(lobby=code_text), timeout_s=float(timeout))
    finally:
        close_net_debug_log()
    raise typer.Exit(code)


def main(argv: list[str] | None = None) -> None:
    app(prog_name="punchthrough", args=argv)


if __name__ == "__main__":
    main()
