from __future__ import annotations

import time

import pytest

from punchthrough.config import ClientConfig, ServerConfig
from punchthrough.endpoint import SharedPunchChannel
from punchthrough.runtime import PunchthroughClient
from punchthrough.server import RendezvousServer
from punchthrough.types import ClientEvent, ClientState, Failed, HostLobby, HostSuccess, JoinAccepted, JoinLobby, Success


def _pump(
    server: RendezvousServer,
    clients: list[PunchthroughClient],
    events: dict[int, list[ClientEvent]],
    *,
    until,  # noqa: ANN001
    timeout_s: float = 5.0,
) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        for index, client in enumerate(clients):
            client.update()
            events.setdefault(index, []).extend(client.poll_events())
        server.update()
        if until():
            return
        time.sleep(0.005)
    raise AssertionError(f"timed out; events so far: {events}")


def test_default_channel_shares_the_control_socket() -> None:
    client = PunchthroughClient(ClientConfig())

    channel = client.driver.open_channel()

    assert isinstance(channel, SharedPunchChannel)
    assert channel.endpoint is client.endpoint


@pytest.mark.loopback
def test_punch_port_opens_a_dedicated_socket() -> None:
    client = PunchthroughClient(ClientConfig(bind_host="127.0.0.1", punch_host="127.0.0.1", punch_port=0))
    assert client.endpoint.register_punch is True
    with pytest.raises(OSError):
        client.driver.open_channel()

    client.open(now_ms=0)
    try:
        channel = client.driver.open_channel()
        local_addr = channel.local_addr
        assert local_addr[0] == "127.0.0.1"
        assert local_addr[1] > 0
        assert local_addr != client.endpoint.transport.bound_addr

        # Each attempt borrows the socket; it stays bound for the next one.
        channel.close()
        assert client.driver.open_channel().local_addr == local_addr
    finally:
        client.close()

    with pytest.raises(OSError):
        client.driver.open_channel()


@pytest.mark.loopback
def test_unreachable_server_fails_with_link_error() -> None:
    client = PunchthroughClient(ClientConfig(server_host="127.0.0.1", server_port=9, bind_host="127.0.0.1"))
    client.open(now_ms=0)
    try:
        client.request(HostLobby())
        client.update(now_ms=0)
        client.update(now_ms=5000)
        client.update(now_ms=5010)

        assert client.state is ClientState.FAILED
        assert client.poll_events() == [Failed(reason="server link lost: connect_timeout")]
    finally:
        client.close()


@pytest.mark.loopback
def test_host_and_joiner_punch_through_over_loopback() -> None:
    server = RendezvousServer(ServerConfig(bind_host="127.0.0.1", port=0))
    server.open()
    cfg = ClientConfig(server_host="127.0.0.1", server_port=server.bound_addr[1], bind_host="127.0.0.1")
    host = PunchthroughClient(cfg)
    joiner = PunchthroughClient(cfg)
    events: dict[int, list[ClientEvent]] = {}
    try:
        host.open()
        host.request(HostLobby())
        _pump(server, [host], events, until=lambda: host.state is ClientState.HOSTING)
        hosted = [event for event in events[0] if isinstance(event, HostSuccess)]
        assert len(hosted) == 1
        code = hosted[0].lobby
        assert len(code) == 5

        joiner.open()
        joiner.request(JoinLobby(lobby=code.lower()))
        _pump(
            server,
            [host, joiner],
            events,
            until=lambda: host.state.terminal and joiner.state.terminal,
        )

        assert host.state is ClientState.CONNECTED
        assert joiner.state is ClientState.CONNECTED
        assert JoinAccepted(lobby=code) in events[1]
        host_success = [event for event in events[0] if isinstance(event, Success)]
        join_success = [event for event in events[1] if isinstance(event, Success)]
        assert host_success == [
            Success(target_addr=joiner.endpoint.transport.bound_addr, local_addr=host.endpoint.transport.bound_addr)
        ]
        assert join_success == [
            Success(target_addr=host.endpoint.transport.bound_addr, local_addr=joiner.endpoint.transport.bound_addr)
        ]
    finally:
        joiner.close()
        host.close()
        server.close()


@pytest.mark.loopback
def test_host_and_joiner_punch_through_dedicated_sockets_over_loopback() -> None:
    server = RendezvousServer(ServerConfig(bind_host="127.0.0.1", port=0))
    server.open()
    cfg = ClientConfig(
        server_host="127.0.0.1",
        server_port=server.bound_addr[1],
        bind_host="127.0.0.1",
        punch_host="127.0.0.1",
        punch_port=0,
    )
    host = PunchthroughClient(cfg)
    joiner = PunchthroughClient(cfg)
    events: dict[int, list[ClientEvent]] = {}
    try:
        host.open()
        host.request(HostLobby())
        _pump(server, [host], events, until=lambda: host.state is ClientState.HOSTING)
        code = [event for event in events[0] if isinstance(event, HostSuccess)][0].lobby
        host_punch = host.endpoint.punch_registered
        assert host_punch is not None
        assert host_punch != host.endpoint.transport.bound_addr

        joiner.open()
        joiner.request(JoinLobby(lobby=code))
        _pump(
            server,
            [host, joiner],
            events,
            until=lambda: host.state.terminal and joiner.state.terminal,
        )

        assert host.state is ClientState.CONNECTED, events
        assert joiner.state is ClientState.CONNECTED, events
        joiner_punch = joiner.endpoint.punch_registered
        assert [event for event in events[0] if isinstance(event, Success)] == [
            Success(target_addr=joiner_punch, local_addr=host_punch)
        ]
        assert [event for event in events[1] if isinstance(event, Success)] == [
            Success(target_addr=host_punch, local_addr=joiner_punch)
        ]
    finally:
        joiner.close()
        host.close()
        server.close()
