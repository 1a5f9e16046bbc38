from __future__ import annotations

from dataclasses import dataclass, field
import time

from .client import ClientProtocolProcessor
from .config import ClientConfig
from .debug_log import net_debug_log
from .endpoint import ClientEndpoint, SharedPunchChannel
from .handshake import BorrowedPunchChannel, ChannelFactory, HandshakeDriver, PunchChannel, SocketPunchChannel
from .transport import UdpTransport
from .types import ClientEvent, ClientIntent, ClientState


def _now_ms() -> int:
    return int(time.monotonic() * 1000.0)


@dataclass(slots=True)
class PunchthroughClient:
    """Drive the server link, the protocol processor and the punch driver from one tick."""

    cfg: ClientConfig
    open_channel: ChannelFactory | None = None
    endpoint: ClientEndpoint = field(init=False)
    driver: HandshakeDriver = field(init=False)
    processor: ClientProtocolProcessor = field(init=False)
    _punch_socket: SocketPunchChannel | None = field(init=False, default=None)
    _link_error_reported: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self.endpoint = ClientEndpoint(
            transport=UdpTransport(bind_host=str(self.cfg.bind_host), bind_port=int(self.cfg.bind_port)),
            server_addr=self.cfg.server_addr,
            register_punch=self.cfg.punch_addr is not None,
        )
        self.driver = HandshakeDriver(
            open_channel=self.open_channel or self._default_channel,
            interval_ms=int(self.cfg.punch_interval_ms),
            max_attempts=int(self.cfg.punch_max_attempts),
        )
        self.processor = ClientProtocolProcessor(transport=self.endpoint, driver=self.driver)

    def _default_channel(self) -> PunchChannel:
        if self.cfg.punch_addr is None:
            return SharedPunchChannel(endpoint=self.endpoint)
        if self._punch_socket is None:
            raise OSError("punch socket is not open")
        # The socket outlives each attempt; the server has registered its mapping.
        return BorrowedPunchChannel(inner=self._punch_socket)

    @property
    def state(self) -> ClientState:
        return self.processor.state

    @property
    def lobby(self) -> str:
        return self.processor.lobby

    def open(self, *, now_ms: int | None = None) -> None:
        if now_ms is None:
            now_ms = _now_ms()
        punch_addr = self.cfg.punch_addr
        if punch_addr is not None and self._punch_socket is None:
            self._punch_socket = SocketPunchChannel.bind(punch_addr)
        try:
            self.endpoint.open(now_ms=int(now_ms))
        except OSError:
            self._close_punch_socket()
            raise
        self._link_error_reported = False

    def close(self) -> None:
        try:
            self.driver.cancel()
        finally:
            try:
                self.endpoint.close(now_ms=_now_ms())
            finally:
                self._close_punch_socket()

    def _close_punch_socket(self) -> None:
        punch_socket, self._punch_socket = self._punch_socket, None
        if punch_socket is not None:
            punch_socket.close()

    def request(self, intent: ClientIntent) -> None:
        self.processor.submit(intent)

    def update(self, *, now_ms: int | None = None) -> None:
        if now_ms is None:
            now_ms = _now_ms()
        for payload in self.endpoint.update(now_ms=int(now_ms)):
            self.processor.handle_message(payload, now_ms=int(now_ms))
        self._announce_punch_socket(now_ms=int(now_ms))

        if self.endpoint.error and not self._link_error_reported:
            self._link_error_reported = True
            net_debug_log("client_link_error", reason=self.endpoint.error)
            self.processor.handle_link_error(self.endpoint.error)

        if self.processor.state is ClientState.HANDSHAKING and self.driver.peer_punch_seen():
            self.processor.confirm_connected(now_ms=int(now_ms))
        self.processor.update(now_ms=int(now_ms))

    def poll_events(self) -> list[ClientEvent]:
        return self.processor.poll_events()

    def _announce_punch_socket(self, *, now_ms: int) -> None:
        if self._punch_socket is None:
            return
        blob = self.endpoint.punch_announce(now_ms=now_ms)
        if blob is None:
            return
        try:
            self._punch_socket.send(blob, self.endpoint.server_addr)
        except OSError as exc:
            net_debug_log("punch_announce_error", error=str(exc))
