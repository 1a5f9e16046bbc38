from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TypeAlias

from .protocol import PeerAddr


class ClientState(IntEnum):
    IDLE = 0
    AWAITING_LOBBY_RESPONSE = 1
    HOSTING = 2
    HANDSHAKING = 3
    CONNECTED = 4
    FAILED = 5

    @property
    def terminal(self) -> bool:
        return self in (ClientState.CONNECTED, ClientState.FAILED)


# Intents an embedding application hands to the client.


@dataclass(frozen=True, slots=True)
class HostLobby:
    pass


@dataclass(frozen=True, slots=True)
class JoinLobby:
    lobby: str


ClientIntent: TypeAlias = HostLobby | JoinLobby


# Events the client reports back.


@dataclass(frozen=True, slots=True)
class Success:
    target_addr: PeerAddr
    local_addr: PeerAddr


@dataclass(frozen=True, slots=True)
class HostSuccess:
    lobby: str


@dataclass(frozen=True, slots=True)
class JoinAccepted:
    lobby: str


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str


ClientEvent: TypeAlias = Success | HostSuccess | JoinAccepted | Failed
