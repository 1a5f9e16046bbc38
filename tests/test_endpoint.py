from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
import time

import pytest

from punchthrough.endpoint import (
    ClientConnected,
    ClientDisconnected,
    ClientEndpoint,
    ServerEndpoint,
    SharedPunchChannel,
)
from punchthrough.protocol import (
    HostNewLobby,
    Packet,
    PeerAddr,
    PunchAnnounce,
    RequestSwap,
    decode_message,
    decode_packet,
    encode_message,
    encode_packet,
)
from punchthrough.transport import ClientNotConnectedError, UdpTransport, decode_datagram

SERVER = ("127.0.0.1", 5000)
ALICE = ("127.0.0.1", 40001)
BOB = ("127.0.0.1", 40002)
ALICE_PUNCH = ("127.0.0.1", 41001)


@dataclass(slots=True)
class _Net:
    queues: dict[PeerAddr, deque[tuple[PeerAddr, bytes]]] = field(default_factory=lambda: defaultdict(deque))


@dataclass(slots=True)
class _FakeUdp:
    net: _Net
    addr: PeerAddr
    is_open: bool = False

    @property
    def bound_addr(self) -> PeerAddr:
        return self.addr

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def send_packet(self, addr: PeerAddr, packet: Packet) -> None:
        self.send_raw(addr, encode_packet(packet))

    def send_raw(self, addr: PeerAddr, blob: bytes) -> None:
        self.net.queues[tuple(addr)].append((self.addr, blob))

    def recv_datagrams(self) -> list[tuple[PeerAddr, bytes]]:
        queue = self.net.queues[self.addr]
        out = list(queue)
        queue.clear()
        return out

    def recv_packets(self) -> list[tuple[PeerAddr, Packet]]:
        out: list[tuple[PeerAddr, Packet]] = []
        for addr, blob in self.recv_datagrams():
            packet = decode_datagram(addr, blob)
            if packet is not None:
                out.append((addr, packet))
        return out


def _pair(net: _Net, *, client_addr: PeerAddr = ALICE, **server_kwargs) -> tuple[ServerEndpoint, ClientEndpoint]:  # noqa: ANN003
    server = ServerEndpoint(transport=_FakeUdp(net, SERVER), **server_kwargs)
    server.open()
    client = _client(net, client_addr)
    return server, client


def _client(net: _Net, addr: PeerAddr, **kwargs) -> ClientEndpoint:  # noqa: ANN003
    client = ClientEndpoint(transport=_FakeUdp(net, addr), server_addr=SERVER, **kwargs)
    client.open(now_ms=0)
    return client


def _connect(server: ServerEndpoint, client: ClientEndpoint, *, now_ms: int = 0) -> list:
    client.update(now_ms=now_ms)
    events, _inbox = server.update(now_ms=now_ms)
    client.update(now_ms=now_ms)
    return events


def test_connect_assigns_id_and_records_observed_address() -> None:
    net = _Net()
    server, client = _pair(net)

    events = _connect(server, client)

    assert events == [ClientConnected(client_id=1, addr=ALICE)]
    assert client.connected is True
    assert client.client_id == 1
    assert server.observed_address(1) == ALICE
    assert server.connected_clients() == {1}


def test_messages_sent_before_accept_are_flushed_in_order() -> None:
    net = _Net()
    server, client = _pair(net)
    client.send_message(HostNewLobby())
    client.send_message(RequestSwap(lobby_id="K7QRM"))

    _connect(server, client)
    _events, inbox = server.update(now_ms=10)

    assert [(cid, decode_message(data)) for cid, data in inbox] == [
        (1, HostNewLobby()),
        (1, RequestSwap(lobby_id="K7QRM")),
    ]


def test_server_message_reaches_client_inbox() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)

    server.send_message(1, HostNewLobby(), now_ms=5)

    assert [decode_message(blob) for blob in client.update(now_ms=6)] == [HostNewLobby()]


def test_send_to_unknown_client_raises() -> None:
    net = _Net()
    server, _client_ep = _pair(net)

    with pytest.raises(ClientNotConnectedError) as excinfo:
        server.send_message(42, HostNewLobby())

    assert excinfo.value.client_id == 42


def test_protocol_mismatch_is_rejected() -> None:
    net = _Net()
    server = ServerEndpoint(transport=_FakeUdp(net, SERVER))
    server.open()
    client = _client(net, ALICE, protocol_id=8)

    events = _connect(server, client)

    assert events == []
    assert client.error == "protocol_mismatch"
    assert client.connected is False


def test_full_server_rejects_extra_clients() -> None:
    net = _Net()
    server, alice = _pair(net, max_clients=1)
    bob = _client(net, BOB)

    _connect(server, alice)
    events = _connect(server, bob)

    assert events == []
    assert bob.error == "server_full"
    assert server.connected_clients() == {1}


def test_silent_client_times_out() -> None:
    net = _Net()
    server, client = _pair(net, link_timeout_ms=5000)
    _connect(server, client)

    events, _ = server.update(now_ms=4999)
    assert events == []
    events, _ = server.update(now_ms=5000)

    assert events == [ClientDisconnected(client_id=1, reason="timeout")]
    assert server.observed_address(1) is None


def test_client_gives_up_when_server_never_answers() -> None:
    net = _Net()
    client = _client(net, ALICE, link_timeout_ms=1000)

    client.update(now_ms=0)
    client.update(now_ms=999)
    assert client.error == ""
    client.update(now_ms=1000)

    assert client.error == "connect_timeout"


def test_client_retries_connect_on_interval() -> None:
    net = _Net()
    client = _client(net, ALICE, connect_retry_ms=200)

    client.update(now_ms=0)
    client.update(now_ms=100)
    client.update(now_ms=200)

    assert len(net.queues[SERVER]) == 2


def test_client_close_disconnects_and_drops_queued_payloads() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)

    client.send_message(HostNewLobby(), now_ms=10)
    client.close(now_ms=10)
    events, inbox = server.update(now_ms=20)

    assert events == [ClientDisconnected(client_id=1, reason="client_closed")]
    assert inbox == []


def test_server_disconnect_sets_client_error() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)

    server.disconnect(1, reason="kicked", now_ms=10)
    client.update(now_ms=11)

    assert client.error == "kicked"
    assert server.connected_clients() == set()


def test_non_server_datagrams_are_kept_for_the_punch_channel() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)
    channel = SharedPunchChannel(endpoint=client)

    net.queues[ALICE].append((BOB, b"punchthrough:punch"))
    assert client.update(now_ms=10) == []

    assert channel.recv() == [(BOB, b"punchthrough:punch")]
    assert channel.recv() == []
    assert channel.local_addr == ALICE

    channel.send(b"punchthrough:punch", BOB)
    assert list(net.queues[BOB]) == [(ALICE, b"punchthrough:punch")]


def test_reliable_message_survives_a_lost_datagram() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)

    server.send_message(1, HostNewLobby(), now_ms=100)
    net.queues[ALICE].clear()
    assert client.update(now_ms=150) == []

    server.update(now_ms=300)
    assert [decode_message(blob) for blob in client.update(now_ms=301)] == [HostNewLobby()]


@pytest.mark.loopback
def test_endpoints_connect_over_loopback() -> None:
    server = ServerEndpoint(transport=UdpTransport(bind_host="127.0.0.1", bind_port=0))
    server.open()
    client = ClientEndpoint(
        transport=UdpTransport(bind_host="127.0.0.1", bind_port=0),
        server_addr=server.transport.bound_addr,
    )
    start = int(time.monotonic() * 1000)
    client.open(now_ms=start)
    client.send_message(HostNewLobby())
    inbox: list[tuple[int, bytes]] = []
    try:
        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline and not inbox:
            now_ms = int(time.monotonic() * 1000)
            client.update(now_ms=now_ms)
            server.transport.wait_readable(0.01)
            _events, batch = server.update(now_ms=now_ms)
            inbox.extend(batch)
        assert client.connected is True
        assert server.observed_address(int(client.client_id or 0)) == client.transport.bound_addr
        assert [decode_message(data) for _cid, data in inbox] == [HostNewLobby()]
    finally:
        client.close(now_ms=int(time.monotonic() * 1000))
        server.close()


def _announce_from(net: _Net, client: ClientEndpoint, addr: PeerAddr, *, now_ms: int) -> bytes | None:
    blob = client.punch_announce(now_ms=now_ms)
    if blob is not None:
        net.queues[SERVER].append((addr, blob))
    return blob


def test_punch_socket_registration_replaces_the_observed_address() -> None:
    net = _Net()
    server = ServerEndpoint(transport=_FakeUdp(net, SERVER))
    server.open()
    client = _client(net, ALICE, register_punch=True)
    client.send_message(HostNewLobby())
    _connect(server, client)
    assert client.connected is True
    assert client.ready is False

    _events, inbox = server.update(now_ms=5)
    assert inbox == []
    assert server.observed_address(1) == ALICE

    assert _announce_from(net, client, ALICE_PUNCH, now_ms=10) is not None
    assert client.punch_announce(now_ms=11) is None
    server.update(now_ms=12)
    assert server.observed_address(1) == ALICE_PUNCH

    client.update(now_ms=13)
    assert client.punch_registered == ALICE_PUNCH
    assert client.ready is True
    assert client.punch_announce(now_ms=500) is None

    _events, inbox = server.update(now_ms=14)
    assert [(cid, decode_message(data)) for cid, data in inbox] == [(1, HostNewLobby())]


def test_punch_announce_carries_the_accepted_token() -> None:
    net = _Net()
    server, client = _pair(net)
    _connect(server, client)
    assert client.punch_announce(now_ms=10) is None

    registering = _client(net, BOB, register_punch=True)
    _connect(server, registering, now_ms=20)

    announce = decode_packet(registering.punch_announce(now_ms=30)).message
    assert isinstance(announce, PunchAnnounce)
    assert announce.client_id == 2
    assert announce.token == registering.token


def test_punch_announce_with_wrong_token_is_ignored() -> None:
    net = _Net()
    server = ServerEndpoint(transport=_FakeUdp(net, SERVER))
    server.open()
    client = _client(net, ALICE, register_punch=True)
    _connect(server, client)

    forged = PunchAnnounce(client_id=1, token=client.token + 1)
    net.queues[SERVER].append((BOB, encode_packet(Packet(message=forged))))
    server.update(now_ms=10)
    client.update(now_ms=11)

    assert server.observed_address(1) == ALICE
    assert client.punch_registered is None


def test_unregistered_punch_socket_fails_the_link() -> None:
    net = _Net()
    server = ServerEndpoint(transport=_FakeUdp(net, SERVER), keepalive_ms=100)
    server.open()
    client = _client(net, ALICE, register_punch=True, link_timeout_ms=1000)
    _connect(server, client)

    # Announces are never delivered.
    for now_ms in range(100, 1001, 100):
        client.punch_announce(now_ms=now_ms)
        server.update(now_ms=now_ms)
        client.update(now_ms=now_ms)

    assert client.error == "punch_register_timeout"
