from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import Protocol

import msgspec

from .config import ServerConfig
from .debug_log import net_debug_log
from .endpoint import ClientConnected, ClientDisconnected, Inbox, ServerEndpoint, ServerEvent
from .protocol import (
    CLIENT_MESSAGES,
    AttemptHandshakeCommand,
    ControlMessage,
    HostNewLobby,
    InternalServerError,
    JoinLobbyResponse,
    LobbyNotFound,
    NewLobbyResponse,
    PeerAddr,
    RequestSwap,
    decode_message,
    message_kind,
)
from .registry import LobbyNotFoundError, LobbyRegistry, normalize_lobby_code
from .transport import TransportError, UdpTransport


def _now_ms() -> int:
    return int(time.monotonic() * 1000.0)


class ServerTransport(Protocol):
    def observed_address(self, client_id: int) -> PeerAddr | None: ...

    def connected_clients(self) -> set[int]: ...

    def send_message(self, client_id: int, message: ControlMessage) -> None: ...


@dataclass(slots=True)
class RendezvousHandler:
    """Apply transport events and client requests to the lobby registry.

    Holds no per-connection state of its own; everything lives in the registry.
    """

    registry: LobbyRegistry
    transport: ServerTransport

    def process(self, events: list[ServerEvent], inbox: Inbox) -> None:
        for event in events:
            self.handle_event(event)
        for client_id, payload in inbox:
            self.handle_message(client_id, payload)

    def handle_event(self, event: ServerEvent) -> None:
        if isinstance(event, ClientConnected):
            addr = self.transport.observed_address(event.client_id) or event.addr
            net_debug_log("client_connected", client_id=event.client_id, addr=addr)
            return
        if isinstance(event, ClientDisconnected):
            code = self.registry.unregister(event.client_id)
            net_debug_log(
                "client_disconnected",
                client_id=event.client_id,
                reason=event.reason,
                released_lobby=code or "",
            )

    def handle_message(self, client_id: int, payload: bytes) -> None:
        try:
            message = decode_message(payload)
        except msgspec.DecodeError as exc:
            net_debug_log("msg_malformed", client_id=client_id, size=len(payload), error=str(exc))
            return
        if not isinstance(message, CLIENT_MESSAGES):
            net_debug_log("msg_unexpected", client_id=client_id, kind=message_kind(message))
            return

        if isinstance(message, HostNewLobby):
            self._host_new_lobby(client_id)
        elif isinstance(message, RequestSwap):
            self._request_swap(client_id, message.lobby_id)

    def _host_new_lobby(self, client_id: int) -> None:
        addr = self.transport.observed_address(client_id)
        if addr is None:
            # Disconnected earlier in this cycle; registering now would leak the entry.
            net_debug_log("host_dropped", client_id=client_id, reason="not_connected")
            return
        code = self.registry.register(client_id, addr)
        net_debug_log("lobby_hosted", client_id=client_id, lobby=code, addr=addr)
        self._send(client_id, NewLobbyResponse(lobby_id=code))

    def _request_swap(self, client_id: int, lobby_id: str) -> None:
        joiner_addr = self.transport.observed_address(client_id)
        if joiner_addr is None:
            net_debug_log("swap_dropped", client_id=client_id, reason="not_connected")
            return

        code = normalize_lobby_code(lobby_id)
        try:
            host = self.registry.lookup(code)
        except LobbyNotFoundError:
            net_debug_log("lobby_not_found", client_id=client_id, lobby=lobby_id)
            self._send(client_id, JoinLobbyResponse(err=LobbyNotFound(lobby=str(lobby_id))))
            return

        if host.client_id not in self.transport.connected_clients():
            # Registry and transport disagree about the host; drop the stale entry.
            self.registry.unregister(host.client_id)
            net_debug_log("lobby_stale", client_id=client_id, lobby=code, host_id=host.client_id)
            self._send(client_id, JoinLobbyResponse(err=InternalServerError()))
            return

        net_debug_log("lobby_swap", lobby=code, host_id=host.client_id, joiner_id=client_id)
        self._send(client_id, JoinLobbyResponse(err=None))
        self._send(host.client_id, AttemptHandshakeCommand(address=joiner_addr))
        self._send(client_id, AttemptHandshakeCommand(address=host.observed_addr))

    def _send(self, client_id: int, message: ControlMessage) -> bool:
        try:
            self.transport.send_message(client_id, message)
        except (TransportError, OSError) as exc:
            net_debug_log("msg_send_failed", client_id=client_id, kind=message_kind(message), error=str(exc))
            return False
        return True


@dataclass(slots=True)
class RendezvousServer:
    cfg: ServerConfig
    registry: LobbyRegistry = field(default_factory=LobbyRegistry)
    endpoint: ServerEndpoint = field(init=False)
    handler: RendezvousHandler = field(init=False)

    def __post_init__(self) -> None:
        self.endpoint = ServerEndpoint(
            transport=UdpTransport(bind_host=str(self.cfg.bind_host), bind_port=int(self.cfg.port)),
            max_clients=int(self.cfg.max_clients),
        )
        self.handler = RendezvousHandler(registry=self.registry, transport=self.endpoint)

    @property
    def bound_addr(self) -> PeerAddr:
        return self.endpoint.transport.bound_addr

    def open(self) -> None:
        self.endpoint.open()

    def close(self) -> None:
        self.endpoint.close(now_ms=_now_ms())

    def update(self, *, now_ms: int | None = None) -> None:
        if now_ms is None:
            now_ms = _now_ms()
        events, inbox = self.endpoint.update(now_ms=int(now_ms))
        self.handler.process(events, inbox)

    def serve_forever(self, stop: threading.Event | None = None) -> None:
        tick_s = float(self.cfg.tick_ms) / 1000.0
        self.open()
        try:
            while stop is None or not stop.is_set():
                self.endpoint.transport.wait_readable(tick_s)
                self.update()
        finally:
            self.close()


__all__ = ["RendezvousHandler", "RendezvousServer", "ServerTransport"]
