from __future__ import annotations

import select
import socket
from dataclasses import dataclass, field

import msgspec

from .debug_log import net_debug_log
from .protocol import Packet, PeerAddr, decode_packet, encode_packet


class TransportError(RuntimeError):
    pass


class ClientNotConnectedError(TransportError):
    def __init__(self, client_id: int) -> None:
        super().__init__(f"client {client_id} is not connected")
        self.client_id = int(client_id)


def normalize_addr(raw_addr: tuple) -> PeerAddr:
    return (str(raw_addr[0]), int(raw_addr[1]))


def decode_datagram(addr: PeerAddr, blob: bytes) -> Packet | None:
    try:
        return decode_packet(blob)
    except msgspec.DecodeError as exc:
        net_debug_log("net_recv_malformed", addr=addr, size=len(blob), error=str(exc))
        return None


@dataclass(slots=True)
class UdpTransport:
    """Non-blocking datagram socket speaking the msgpack packet envelope."""

    bind_host: str
    bind_port: int
    recv_buffer_size: int = 65536
    _sock: socket.socket | None = field(init=False, default=None)

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    @property
    def bound_addr(self) -> PeerAddr:
        sock = self._sock
        if sock is None:
            return (str(self.bind_host), int(self.bind_port))
        return normalize_addr(sock.getsockname())

    def open(self) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((str(self.bind_host), int(self.bind_port)))
        except OSError:
            sock.close()
            raise
        self._sock = sock

    def close(self) -> None:
        sock = self._sock
        self._sock = None
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            return

    def send_packet(self, addr: PeerAddr, packet: Packet) -> None:
        self.send_raw(addr, encode_packet(packet))

    def send_raw(self, addr: PeerAddr, blob: bytes) -> None:
        sock = self._sock
        if sock is None:
            raise TransportError("transport is not open")
        sock.sendto(blob, (str(addr[0]), int(addr[1])))

    def recv_datagrams(self) -> list[tuple[PeerAddr, bytes]]:
        sock = self._sock
        if sock is None:
            return []
        out: list[tuple[PeerAddr, bytes]] = []
        while True:
            try:
                blob, raw_addr = sock.recvfrom(int(self.recv_buffer_size))
            except BlockingIOError:
                break
            except ConnectionResetError:
                # Windows reports an earlier ICMP port-unreachable here.
                continue
            except OSError as exc:
                net_debug_log("net_recv_error", error=str(exc))
                break
            out.append((normalize_addr(raw_addr), blob))
        return out

    def recv_packets(self) -> list[tuple[PeerAddr, Packet]]:
        out: list[tuple[PeerAddr, Packet]] = []
        for addr, blob in self.recv_datagrams():
            packet = decode_datagram(addr, blob)
            if packet is not None:
                out.append((addr, packet))
        return out

    def wait_readable(self, timeout_s: float) -> bool:
        sock = self._sock
        if sock is None:
            return False
        readable, _, _ = select.select([sock], [], [], max(0.0, float(timeout_s)))
        return bool(readable)
