from __future__ import annotations

from typing import TypeAlias

import msgspec

PROTOCOL_ID = 7
DEFAULT_PORT = 5000
MAX_CLIENTS = 64
LOBBY_CODE_LENGTH = 5
LOBBY_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
RELIABLE_RESEND_MS = 200
# Reliable packets further than this past the delivered sequence are dropped unheld.
RELIABLE_WINDOW = 256
CONNECT_RETRY_MS = 200
KEEPALIVE_MS = 1000
LINK_TIMEOUT_MS = 5000
PUNCH_INTERVAL_MS = 100
PUNCH_MAX_ATTEMPTS = 20
PUNCH_PAYLOAD = b"punchthrough:punch"


PeerAddr: TypeAlias = tuple[str, int]


# Control messages travel as `[tag, *fields]`; tags are part of the wire format.


class HostNewLobby(msgspec.Struct, tag=0, array_like=True, forbid_unknown_fields=True):
    pass


class NewLobbyResponse(msgspec.Struct, tag=1, array_like=True, forbid_unknown_fields=True):
    lobby_id: str


class RequestSwap(msgspec.Struct, tag=2, array_like=True, forbid_unknown_fields=True):
    lobby_id: str


class LobbyNotFound(msgspec.Struct, tag=0, array_like=True, forbid_unknown_fields=True):
    lobby: str


class InternalServerError(msgspec.Struct, tag=1, array_like=True, forbid_unknown_fields=True):
    pass


ProtocolError: TypeAlias = LobbyNotFound | InternalServerError


class JoinLobbyResponse(msgspec.Struct, tag=3, array_like=True, forbid_unknown_fields=True):
    err: ProtocolError | None = None


class AttemptHandshakeCommand(msgspec.Struct, tag=4, array_like=True, forbid_unknown_fields=True):
    address: PeerAddr


ControlMessage: TypeAlias = (
    HostNewLobby
    | NewLobbyResponse
    | RequestSwap
    | JoinLobbyResponse
    | AttemptHandshakeCommand
)

# Variants a client may send; everything else is server -> client only.
CLIENT_MESSAGES: tuple[type, ...] = (HostNewLobby, RequestSwap)
SERVER_MESSAGES: tuple[type, ...] = (NewLobbyResponse, JoinLobbyResponse, AttemptHandshakeCommand)


def describe_error(err: ProtocolError) -> str:
    if isinstance(err, LobbyNotFound):
        return f"lobby not found: {err.lobby}"
    return "internal server error"


# Session layer carried by the UDP transport.


class Connect(msgspec.Struct, tag=16, array_like=True, forbid_unknown_fields=True):
    protocol_id: int = PROTOCOL_ID


class ConnectAccept(msgspec.Struct, tag=17, array_like=True, forbid_unknown_fields=True):
    client_id: int
    # Proves ownership of client_id when a second socket registers for it.
    token: int = 0


class KeepAlive(msgspec.Struct, tag=18, array_like=True, forbid_unknown_fields=True):
    pass


class Disconnect(msgspec.Struct, tag=19, array_like=True, forbid_unknown_fields=True):
    reason: str = ""


class Payload(msgspec.Struct, tag=20, array_like=True, forbid_unknown_fields=True):
    data: bytes = b""


# Sent from a client's dedicated punch socket so the server observes that mapping instead.
class PunchAnnounce(msgspec.Struct, tag=21, array_like=True, forbid_unknown_fields=True):
    client_id: int
    token: int


class PunchRegistered(msgspec.Struct, tag=22, array_like=True, forbid_unknown_fields=True):
    address: PeerAddr


SessionMessage: TypeAlias = (
    Connect | ConnectAccept | KeepAlive | Disconnect | Payload | PunchAnnounce | PunchRegistered
)


class Packet(msgspec.Struct, array_like=True, forbid_unknown_fields=True):
    seq: int = 0
    ack: int = 0
    reliable: bool = False
    message: SessionMessage = msgspec.field(default_factory=KeepAlive)


_MESSAGE_ENCODER = msgspec.msgpack.Encoder()
_MESSAGE_DECODER = msgspec.msgpack.Decoder(type=ControlMessage)
_PACKET_DECODER = msgspec.msgpack.Decoder(type=Packet)


def encode_message(message: ControlMessage) -> bytes:
    return _MESSAGE_ENCODER.encode(message)


def decode_message(blob: bytes) -> ControlMessage:
    """Decode one control message; raises `msgspec.DecodeError` on bad input."""
    return _MESSAGE_DECODER.decode(blob)


def encode_packet(packet: Packet) -> bytes:
    return _MESSAGE_ENCODER.encode(packet)


def decode_packet(blob: bytes) -> Packet:
    return _PACKET_DECODER.decode(blob)


def message_kind(message: object) -> str:
    return type(message).__name__
