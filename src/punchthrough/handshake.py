from __future__ import annotations

from dataclasses import dataclass, field
import socket
from typing import Callable, Protocol, TypeAlias

from .debug_log import net_debug_log
from .protocol import PUNCH_INTERVAL_MS, PUNCH_MAX_ATTEMPTS, PUNCH_PAYLOAD, PeerAddr
from .transport import normalize_addr
from .types import Failed, Success

HandshakeOutcome: TypeAlias = Success | Failed


class PunchChannel(Protocol):
    @property
    def local_addr(self) -> PeerAddr: ...

    def send(self, blob: bytes, addr: PeerAddr) -> None: ...

    def recv(self) -> list[tuple[PeerAddr, bytes]]: ...

    def close(self) -> None: ...


ChannelFactory: TypeAlias = Callable[[], PunchChannel]


@dataclass(slots=True)
class SocketPunchChannel:
    """A UDP socket of its own, bound to a fixed local address."""

    sock: socket.socket

    @classmethod
    def bind(cls, local_addr: PeerAddr) -> SocketPunchChannel:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((str(local_addr[0]), int(local_addr[1])))
        except OSError:
            sock.close()
            raise
        return cls(sock=sock)

    @property
    def local_addr(self) -> PeerAddr:
        return normalize_addr(self.sock.getsockname())

    def send(self, blob: bytes, addr: PeerAddr) -> None:
        self.sock.sendto(blob, (str(addr[0]), int(addr[1])))

    def recv(self) -> list[tuple[PeerAddr, bytes]]:
        out: list[tuple[PeerAddr, bytes]] = []
        while True:
            try:
                blob, raw_addr = self.sock.recvfrom(2048)
            except BlockingIOError:
                break
            except ConnectionResetError:
                # Windows reports an earlier ICMP port-unreachable here.
                continue
            except OSError as exc:
                net_debug_log("punch_recv_error", error=str(exc))
                break
            out.append((normalize_addr(raw_addr), blob))
        return out

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            return


@dataclass(slots=True)
class BorrowedPunchChannel:
    """Lend a channel owned elsewhere to the driver; `close` leaves it open."""

    inner: PunchChannel

    @property
    def local_addr(self) -> PeerAddr:
        return self.inner.local_addr

    def send(self, blob: bytes, addr: PeerAddr) -> None:
        self.inner.send(blob, addr)

    def recv(self) -> list[tuple[PeerAddr, bytes]]:
        return self.inner.recv()

    def close(self) -> None:
        return None


@dataclass(slots=True)
class HandshakeAttempt:
    target_addr: PeerAddr
    started_ms: int
    attempts_made: int = 0
    last_attempt_ms: int | None = None


@dataclass(slots=True)
class HandshakeDriver:
    """Fire punch datagrams at one target on a fixed cadence until told to stop.

    The driver cannot tell on its own whether the hole is open. It reports
    `Success` only when `confirm` is called, and `Failed` when the attempt
    budget runs out or the channel errors. One channel is opened per attempt
    sequence and closed when the sequence ends.
    """

    open_channel: ChannelFactory
    interval_ms: int = PUNCH_INTERVAL_MS
    max_attempts: int = PUNCH_MAX_ATTEMPTS
    payload: bytes = PUNCH_PAYLOAD
    attempt: HandshakeAttempt | None = field(init=False, default=None)
    _channel: PunchChannel | None = field(init=False, default=None)

    @property
    def active(self) -> bool:
        return self.attempt is not None

    def begin(self, target_addr: PeerAddr, *, now_ms: int) -> HandshakeOutcome | None:
        target = normalize_addr(target_addr)
        current = self.attempt
        if current is None or current.target_addr != target or self._channel is None:
            self.cancel()
            try:
                self._channel = self.open_channel()
            except OSError as exc:
                net_debug_log("punch_bind_failed", target=target, error=str(exc))
                return Failed(reason=f"could not open punch socket: {exc}")
        self.attempt = HandshakeAttempt(target_addr=target, started_ms=int(now_ms))
        net_debug_log("punch_begin", target=target, local=self._channel.local_addr)
        # Both peers get their command at about the same time, so punch right away.
        return self._punch(now_ms=int(now_ms))

    def update(self, *, now_ms: int) -> HandshakeOutcome | None:
        attempt = self.attempt
        if attempt is None:
            return None
        last = attempt.last_attempt_ms
        if last is not None and int(now_ms) - last < int(self.interval_ms):
            return None
        if attempt.attempts_made < int(self.max_attempts):
            return self._punch(now_ms=int(now_ms))
        # One interval of grace after the final punch, then give up.
        target = attempt.target_addr
        self.cancel()
        net_debug_log("punch_exhausted", target=target, attempts=int(self.max_attempts))
        return Failed(reason=f"no response from {target[0]}:{target[1]} after {self.max_attempts} punch attempts")

    def peer_punch_seen(self) -> bool:
        """Drain the channel; True if the target's own punch reached us."""
        attempt = self.attempt
        channel = self._channel
        if attempt is None or channel is None:
            return False
        seen = False
        for addr, blob in channel.recv():
            if addr == attempt.target_addr and blob == self.payload:
                seen = True
            else:
                net_debug_log("punch_recv_stray", addr=addr, size=len(blob))
        return seen

    def confirm(self, *, now_ms: int) -> Success | None:
        attempt = self.attempt
        channel = self._channel
        if attempt is None or channel is None:
            return None
        # Let the peer see us too, in case our earlier punches hit a closed NAT.
        try:
            channel.send(self.payload, attempt.target_addr)
        except OSError as exc:
            net_debug_log("punch_send_failed", target=attempt.target_addr, error=str(exc))
        success = Success(target_addr=attempt.target_addr, local_addr=channel.local_addr)
        net_debug_log(
            "punch_success",
            target=attempt.target_addr,
            local=success.local_addr,
            attempts=attempt.attempts_made,
            elapsed_ms=int(now_ms) - attempt.started_ms,
        )
        self.cancel()
        return success

    def cancel(self) -> None:
        self.attempt = None
        channel = self._channel
        self._channel = None
        if channel is not None:
            channel.close()

    def _punch(self, *, now_ms: int) -> Failed | None:
        attempt = self.attempt
        channel = self._channel
        if attempt is None or channel is None:
            return None
        try:
            channel.send(self.payload, attempt.target_addr)
        except OSError as exc:
            target = attempt.target_addr
            self.cancel()
            net_debug_log("punch_send_failed", target=target, error=str(exc))
            return Failed(reason=f"could not send punch to {target[0]}:{target[1]}: {exc}")
        attempt.attempts_made += 1
        attempt.last_attempt_ms = int(now_ms)
        net_debug_log("punch_sent", target=attempt.target_addr, attempt=attempt.attempts_made)
        return None
