from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import msgspec

from .debug_log import net_debug_log
from .handshake import HandshakeDriver, HandshakeOutcome
from .protocol import (
    SERVER_MESSAGES,
    AttemptHandshakeCommand,
    ControlMessage,
    HostNewLobby,
    JoinLobbyResponse,
    NewLobbyResponse,
    RequestSwap,
    decode_message,
    describe_error,
    message_kind,
)
from .registry import normalize_lobby_code
from .types import (
    ClientEvent,
    ClientIntent,
    ClientState,
    Failed,
    HostLobby,
    HostSuccess,
    JoinAccepted,
    JoinLobby,
    Success,
)


class ClientTransport(Protocol):
    def send_message(self, message: ControlMessage) -> None: ...


@dataclass(slots=True)
class ClientProtocolProcessor:
    """Turn server messages into client events and app intents into server requests.

    States: IDLE -> AWAITING_LOBBY_RESPONSE -> (HOSTING ->) HANDSHAKING -> CONNECTED | FAILED.
    """

    transport: ClientTransport
    driver: HandshakeDriver
    state: ClientState = field(init=False, default=ClientState.IDLE)
    lobby: str = field(init=False, default="")
    _events: list[ClientEvent] = field(init=False, default_factory=list)

    def submit(self, intent: ClientIntent) -> None:
        # A new intent abandons whatever the previous one started.
        self.driver.cancel()
        if isinstance(intent, HostLobby):
            self.lobby = ""
            self.transport.send_message(HostNewLobby())
        elif isinstance(intent, JoinLobby):
            code = normalize_lobby_code(intent.lobby)
            if not code:
                self._fail("lobby code is empty")
                return
            self.lobby = code
            self.transport.send_message(RequestSwap(lobby_id=code))
        else:
            raise TypeError(f"unsupported intent: {intent!r}")
        self._enter(ClientState.AWAITING_LOBBY_RESPONSE)
        net_debug_log("client_intent", kind=type(intent).__name__, lobby=self.lobby)

    def handle_message(self, payload: bytes, *, now_ms: int) -> None:
        try:
            message = decode_message(payload)
        except msgspec.DecodeError as exc:
            net_debug_log("msg_malformed", role="client", size=len(payload), error=str(exc))
            return
        net_debug_log("msg_recv", role="client", kind=message_kind(message))
        if not isinstance(message, SERVER_MESSAGES):
            net_debug_log("msg_unexpected", role="client", kind=message_kind(message))
            return

        if isinstance(message, JoinLobbyResponse):
            if message.err is None:
                self._emit(JoinAccepted(lobby=self.lobby))
            else:
                self._fail(describe_error(message.err))
            return
        if isinstance(message, NewLobbyResponse):
            self.lobby = str(message.lobby_id)
            self._enter(ClientState.HOSTING)
            self._emit(HostSuccess(lobby=self.lobby))
            return
        if isinstance(message, AttemptHandshakeCommand):
            if self.state.terminal:
                # The outcome has been reported; a reused lobby does not re-arm it.
                net_debug_log("handshake_command_ignored", state=self.state.name, target=message.address)
                return
            self._enter(ClientState.HANDSHAKING)
            self._settle(self.driver.begin(message.address, now_ms=int(now_ms)))

    def update(self, *, now_ms: int) -> None:
        if self.state is ClientState.HANDSHAKING:
            self._settle(self.driver.update(now_ms=int(now_ms)))

    def confirm_connected(self, *, now_ms: int) -> None:
        """External signal that the direct peer link works."""
        if self.state is not ClientState.HANDSHAKING:
            return
        self._settle(self.driver.confirm(now_ms=int(now_ms)))

    def handle_link_error(self, reason: str) -> None:
        if self.state.terminal or self.state is ClientState.IDLE:
            return
        self.driver.cancel()
        self._fail(f"server link lost: {reason}")

    def poll_events(self) -> list[ClientEvent]:
        events, self._events = self._events, []
        return events

    def _settle(self, outcome: HandshakeOutcome | None) -> None:
        if outcome is None:
            return
        if isinstance(outcome, Success):
            self._enter(ClientState.CONNECTED)
            self._emit(outcome)
            return
        self._fail(outcome.reason)

    def _fail(self, reason: str) -> None:
        self._enter(ClientState.FAILED)
        self._emit(Failed(reason=str(reason)))

    def _enter(self, state: ClientState) -> None:
        if state is not self.state:
            net_debug_log("client_state", old=self.state.name, new=state.name)
        self.state = state

    def _emit(self, event: ClientEvent) -> None:
        net_debug_log("client_event", kind=type(event).__name__)
        self._events.append(event)
