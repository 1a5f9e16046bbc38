from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import secrets
import socket
from typing import TypeAlias

from .debug_log import net_debug_log
from .protocol import (
    CONNECT_RETRY_MS,
    KEEPALIVE_MS,
    LINK_TIMEOUT_MS,
    MAX_CLIENTS,
    PROTOCOL_ID,
    Connect,
    ConnectAccept,
    ControlMessage,
    Disconnect,
    KeepAlive,
    Packet,
    Payload,
    PeerAddr,
    PunchAnnounce,
    PunchRegistered,
    SessionMessage,
    encode_message,
    encode_packet,
    message_kind,
)
from .reliable import ReliableLink
from .transport import ClientNotConnectedError, UdpTransport, decode_datagram

STRAY_BACKLOG = 64


@dataclass(frozen=True, slots=True)
class ClientConnected:
    client_id: int
    addr: PeerAddr


@dataclass(frozen=True, slots=True)
class ClientDisconnected:
    client_id: int
    reason: str = ""


ServerEvent: TypeAlias = ClientConnected | ClientDisconnected
Inbox: TypeAlias = list[tuple[int, bytes]]


@dataclass(slots=True)
class _ServerPeer:
    client_id: int
    addr: PeerAddr
    token: int = 0
    # Set once the client registers a dedicated punch socket; handed to peers instead of addr.
    punch_addr: PeerAddr | None = None
    link: ReliableLink = field(default_factory=ReliableLink)
    last_seen_ms: int = 0
    last_sent_ms: int = 0


@dataclass(slots=True)
class ServerEndpoint:
    """Server side of the control link: accepts clients and tracks their observed addresses."""

    transport: UdpTransport
    protocol_id: int = PROTOCOL_ID
    max_clients: int = MAX_CLIENTS
    link_timeout_ms: int = LINK_TIMEOUT_MS
    keepalive_ms: int = KEEPALIVE_MS
    _peers: dict[int, _ServerPeer] = field(init=False, default_factory=dict)
    _ids_by_addr: dict[PeerAddr, int] = field(init=False, default_factory=dict)
    _next_client_id: int = field(init=False, default=1)
    _events: list[ServerEvent] = field(init=False, default_factory=list)
    _inbox: Inbox = field(init=False, default_factory=list)
    _clock_ms: int = field(init=False, default=0)

    def open(self) -> None:
        self.transport.open()
        net_debug_log("net_open", role="server", bind=self.transport.bound_addr)

    def close(self, *, now_ms: int = 0) -> None:
        try:
            for client_id in list(self._peers):
                self.disconnect(client_id, reason="server_shutdown", now_ms=now_ms)
        finally:
            self.transport.close()
            self._events.clear()
            self._inbox.clear()
            net_debug_log("net_close", role="server")

    def observed_address(self, client_id: int) -> PeerAddr | None:
        peer = self._peers.get(int(client_id))
        if peer is None:
            return None
        return peer.punch_addr or peer.addr

    def connected_clients(self) -> set[int]:
        return set(self._peers)

    def send_message(self, client_id: int, message: ControlMessage, *, now_ms: int | None = None) -> None:
        peer = self._peers.get(int(client_id))
        if peer is None:
            raise ClientNotConnectedError(int(client_id))
        if now_ms is None:
            now_ms = self._clock_ms
        self._send(peer, Payload(data=encode_message(message)), reliable=True, now_ms=int(now_ms))
        net_debug_log("net_send", role="server", client_id=peer.client_id, kind=message_kind(message))

    def disconnect(self, client_id: int, *, reason: str, now_ms: int = 0) -> None:
        peer = self._peers.get(int(client_id))
        if peer is None:
            return
        self._send(peer, Disconnect(reason=str(reason)), reliable=False, now_ms=now_ms)
        self._drop(peer, reason=str(reason))

    def update(self, *, now_ms: int) -> tuple[list[ServerEvent], Inbox]:
        """Drain the socket and return this cycle's events and payloads, in arrival order."""
        self._clock_ms = int(now_ms)
        for addr, packet in self.transport.recv_packets():
            client_id = self._ids_by_addr.get(addr)
            if client_id is None:
                self._handle_stranger(addr, packet, now_ms=now_ms)
                continue
            peer = self._peers[client_id]
            peer.last_seen_ms = int(now_ms)
            messages, dup = peer.link.unwrap(packet)
            if dup:
                net_debug_log("net_recv_dup", role="server", client_id=client_id, seq=int(packet.seq))
            for message in messages:
                if self._handle_peer_message(peer, message, now_ms=now_ms):
                    break

        for peer in list(self._peers.values()):
            if int(now_ms) - peer.last_seen_ms >= int(self.link_timeout_ms):
                net_debug_log("net_timeout", role="server", client_id=peer.client_id, addr=peer.addr)
                self._drop(peer, reason="timeout")

        for peer in self._peers.values():
            for resend in peer.link.due_resends(now_ms=int(now_ms)):
                self._transmit(peer, resend, now_ms=now_ms)
            if int(now_ms) - peer.last_sent_ms >= int(self.keepalive_ms):
                self._send(peer, KeepAlive(), reliable=False, now_ms=now_ms)

        events, inbox = self._events, self._inbox
        self._events, self._inbox = [], []
        return events, inbox

    def _handle_stranger(self, addr: PeerAddr, packet: Packet, *, now_ms: int) -> None:
        message = packet.message
        if isinstance(message, PunchAnnounce):
            self._register_punch(addr, message, now_ms=now_ms)
            return
        if not isinstance(message, Connect):
            net_debug_log("net_recv_stranger", role="server", addr=addr, kind=message_kind(message))
            return
        if int(message.protocol_id) != int(self.protocol_id):
            self._reject(addr, "protocol_mismatch")
            return
        if len(self._peers) >= int(self.max_clients):
            self._reject(addr, "server_full")
            return

        client_id = int(self._next_client_id)
        self._next_client_id += 1
        peer = _ServerPeer(client_id=client_id, addr=addr, token=secrets.randbits(31), last_seen_ms=int(now_ms))
        self._peers[client_id] = peer
        self._ids_by_addr[addr] = client_id
        self._events.append(ClientConnected(client_id=client_id, addr=addr))
        self._send(peer, ConnectAccept(client_id=client_id, token=peer.token), reliable=False, now_ms=now_ms)
        net_debug_log("net_accept", role="server", client_id=client_id, addr=addr)

    def _handle_peer_message(self, peer: _ServerPeer, message: SessionMessage, *, now_ms: int) -> bool:
        """Return True once the peer is gone and the rest of its packet must be ignored."""
        if isinstance(message, Payload):
            self._inbox.append((peer.client_id, bytes(message.data)))
            return False
        if isinstance(message, Connect):
            # Our accept was lost; repeat it.
            self._send(peer, ConnectAccept(client_id=peer.client_id, token=peer.token), reliable=False, now_ms=now_ms)
            return False
        if isinstance(message, Disconnect):
            self._drop(peer, reason=str(message.reason or "client_disconnect"))
            return True
        return False

    def _register_punch(self, addr: PeerAddr, message: PunchAnnounce, *, now_ms: int) -> None:
        peer = self._peers.get(int(message.client_id))
        if peer is None or int(message.token) != peer.token:
            net_debug_log("net_punch_announce_rejected", role="server", addr=addr, client_id=int(message.client_id))
            return
        if peer.punch_addr != addr:
            peer.punch_addr = addr
            net_debug_log("net_punch_registered", role="server", client_id=peer.client_id, addr=addr)
        # Repeated announces mean the client has not seen the confirmation yet.
        self._send(peer, PunchRegistered(address=addr), reliable=True, now_ms=now_ms)

    def _reject(self, addr: PeerAddr, reason: str) -> None:
        net_debug_log("net_reject", role="server", addr=addr, reason=reason)
        try:
            self.transport.send_packet(addr, Packet(message=Disconnect(reason=reason)))
        except OSError as exc:
            net_debug_log("net_send_error", role="server", addr=addr, error=str(exc))

    def _drop(self, peer: _ServerPeer, *, reason: str) -> None:
        if self._peers.pop(peer.client_id, None) is None:
            return
        self._ids_by_addr.pop(peer.addr, None)
        # Payloads already queued for this cycle are dropped with the peer.
        self._inbox = [(client_id, data) for client_id, data in self._inbox if client_id != peer.client_id]
        self._events.append(ClientDisconnected(client_id=peer.client_id, reason=reason))
        net_debug_log("net_drop", role="server", client_id=peer.client_id, reason=reason)

    def _send(self, peer: _ServerPeer, message: SessionMessage, *, reliable: bool, now_ms: int) -> None:
        packet = peer.link.wrap(message, reliable=reliable, now_ms=int(now_ms))
        self._transmit(peer, packet, now_ms=now_ms)

    def _transmit(self, peer: _ServerPeer, packet: Packet, *, now_ms: int) -> None:
        peer.last_sent_ms = int(now_ms)
        try:
            self.transport.send_packet(peer.addr, packet)
        except OSError as exc:
            # Reliable packets stay in flight and are retried on the next resend tick.
            net_debug_log("net_send_error", role="server", client_id=peer.client_id, error=str(exc))


@dataclass(slots=True)
class ClientEndpoint:
    """Client side of the control link to the rendezvous server."""

    transport: UdpTransport
    server_addr: PeerAddr
    protocol_id: int = PROTOCOL_ID
    connect_retry_ms: int = CONNECT_RETRY_MS
    link_timeout_ms: int = LINK_TIMEOUT_MS
    keepalive_ms: int = KEEPALIVE_MS
    # Hold requests until a dedicated punch socket has been registered with the server.
    register_punch: bool = False
    client_id: int | None = field(init=False, default=None)
    token: int = field(init=False, default=0)
    punch_registered: PeerAddr | None = field(init=False, default=None)
    error: str = field(init=False, default="")
    link: ReliableLink = field(init=False, default_factory=ReliableLink)
    _outbox: list[ControlMessage] = field(init=False, default_factory=list)
    _strays: deque[tuple[PeerAddr, bytes]] = field(init=False, default_factory=lambda: deque(maxlen=STRAY_BACKLOG))
    _opened_ms: int = field(init=False, default=0)
    _last_connect_ms: int | None = field(init=False, default=None)
    _accepted_ms: int = field(init=False, default=0)
    _last_announce_ms: int | None = field(init=False, default=None)
    _last_seen_ms: int = field(init=False, default=0)
    _last_sent_ms: int = field(init=False, default=0)
    _clock_ms: int = field(init=False, default=0)

    @property
    def connected(self) -> bool:
        return self.client_id is not None and not self.error

    @property
    def ready(self) -> bool:
        """Connected, and able to send requests the server will answer with our punch address."""
        return self.connected and (not self.register_punch or self.punch_registered is not None)

    def open(self, *, now_ms: int) -> None:
        # Replies come back from a numeric address; match them against that.
        host, port = self.server_addr
        self.server_addr = (socket.gethostbyname(str(host)), int(port))
        self.transport.open()
        self._opened_ms = int(now_ms)
        self._clock_ms = int(now_ms)
        self._last_seen_ms = int(now_ms)
        net_debug_log("net_open", role="client", bind=self.transport.bound_addr, server=self.server_addr)

    def close(self, *, now_ms: int = 0) -> None:
        try:
            if self.connected and self.transport.is_open:
                self._send(Disconnect(reason="client_closed"), reliable=False, now_ms=now_ms)
        finally:
            self.transport.close()
            self.client_id = None
            self.token = 0
            self.punch_registered = None
            self._last_announce_ms = None
            self._outbox.clear()
            self._strays.clear()
            net_debug_log("net_close", role="client")

    def send_message(self, message: ControlMessage, *, now_ms: int | None = None) -> None:
        if not self.ready:
            # Flushed in order once the link is ready.
            self._outbox.append(message)
            return
        if now_ms is None:
            now_ms = self._clock_ms
        self._send(Payload(data=encode_message(message)), reliable=True, now_ms=int(now_ms))
        net_debug_log("net_send", role="client", kind=message_kind(message))

    def update(self, *, now_ms: int) -> list[bytes]:
        self._clock_ms = int(now_ms)
        if self.error or not self.transport.is_open:
            return []

        inbox: list[bytes] = []
        for addr, blob in self.transport.recv_datagrams():
            if addr != self.server_addr:
                # Peer punches arrive on this socket too; keep them raw for the punch channel.
                self._strays.append((addr, blob))
                continue
            packet = decode_datagram(addr, blob)
            if packet is None:
                continue
            self._last_seen_ms = int(now_ms)
            messages, dup = self.link.unwrap(packet)
            if dup:
                net_debug_log("net_recv_dup", role="client", seq=int(packet.seq))
            for message in messages:
                if isinstance(message, Payload):
                    inbox.append(bytes(message.data))
                elif isinstance(message, ConnectAccept):
                    self._accept(int(message.client_id), int(message.token), now_ms=now_ms)
                elif isinstance(message, PunchRegistered):
                    self._punch_registered(message.address, now_ms=now_ms)
                elif isinstance(message, Disconnect):
                    self.error = str(message.reason or "disconnected")
                    net_debug_log("net_disconnected", role="client", reason=self.error)
                    return inbox

        if self.client_id is None:
            if int(now_ms) - self._opened_ms >= int(self.link_timeout_ms):
                self.error = "connect_timeout"
                net_debug_log("net_timeout", role="client", phase="connect")
                return inbox
            last = self._last_connect_ms
            if last is None or int(now_ms) - last >= int(self.connect_retry_ms):
                self._last_connect_ms = int(now_ms)
                self._send(Connect(protocol_id=int(self.protocol_id)), reliable=False, now_ms=now_ms)
            return inbox

        if int(now_ms) - self._last_seen_ms >= int(self.link_timeout_ms):
            self.error = "timeout"
            net_debug_log("net_timeout", role="client", phase="connected")
            return inbox
        if not self.ready and int(now_ms) - self._accepted_ms >= int(self.link_timeout_ms):
            self.error = "punch_register_timeout"
            net_debug_log("net_timeout", role="client", phase="punch_register")
            return inbox

        for resend in self.link.due_resends(now_ms=int(now_ms)):
            self._transmit(resend, now_ms=now_ms)
        if int(now_ms) - self._last_sent_ms >= int(self.keepalive_ms):
            self._send(KeepAlive(), reliable=False, now_ms=now_ms)
        return inbox

    def take_strays(self) -> list[tuple[PeerAddr, bytes]]:
        """Datagrams from addresses other than the server, oldest first."""
        out = list(self._strays)
        self._strays.clear()
        return out

    def punch_announce(self, *, now_ms: int) -> bytes | None:
        """Encoded `PunchAnnounce` to send from the punch socket, when one is due."""
        if not self.register_punch or not self.connected or self.punch_registered is not None:
            return None
        last = self._last_announce_ms
        if last is not None and int(now_ms) - last < int(self.connect_retry_ms):
            return None
        self._last_announce_ms = int(now_ms)
        announce = PunchAnnounce(client_id=int(self.client_id or 0), token=int(self.token))
        return encode_packet(Packet(message=announce))

    def _accept(self, client_id: int, token: int, *, now_ms: int) -> None:
        if self.client_id is not None:
            return
        self.client_id = client_id
        self.token = token
        self._accepted_ms = int(now_ms)
        net_debug_log("net_accepted", role="client", client_id=client_id)
        if self.ready:
            self._flush(now_ms=now_ms)

    def _punch_registered(self, address: PeerAddr, *, now_ms: int) -> None:
        if not self.register_punch or self.punch_registered is not None:
            return
        self.punch_registered = (str(address[0]), int(address[1]))
        net_debug_log("net_punch_registered", role="client", addr=self.punch_registered)
        self._flush(now_ms=now_ms)

    def _flush(self, *, now_ms: int) -> None:
        pending, self._outbox = self._outbox, []
        for message in pending:
            self.send_message(message, now_ms=now_ms)

    def _send(self, message: SessionMessage, *, reliable: bool, now_ms: int) -> None:
        self._transmit(self.link.wrap(message, reliable=reliable, now_ms=int(now_ms)), now_ms=now_ms)

    def _transmit(self, packet: Packet, *, now_ms: int) -> None:
        self._last_sent_ms = int(now_ms)
        try:
            self.transport.send_packet(self.server_addr, packet)
        except OSError as exc:
            net_debug_log("net_send_error", role="client", error=str(exc))


@dataclass(slots=True)
class SharedPunchChannel:
    """Punch over the control socket, the one mapping the server reported to the peer."""

    endpoint: ClientEndpoint

    @property
    def local_addr(self) -> PeerAddr:
        return self.endpoint.transport.bound_addr

    def send(self, blob: bytes, addr: PeerAddr) -> None:
        self.endpoint.transport.send_raw(addr, blob)

    def recv(self) -> list[tuple[PeerAddr, bytes]]:
        return self.endpoint.take_strays()

    def close(self) -> None:
        # The socket belongs to the endpoint.
        return None
