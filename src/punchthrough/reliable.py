from __future__ import annotations

from dataclasses import dataclass, field

from .protocol import RELIABLE_RESEND_MS, RELIABLE_WINDOW, Packet, SessionMessage


@dataclass(slots=True)
class _InFlight:
    packet: Packet
    sent_at_ms: int


@dataclass(slots=True)
class ReliableLink:
    """Ordered delivery over one UDP peer: sequence numbers, cumulative ack, resend, de-dup."""

    resend_ms: int = RELIABLE_RESEND_MS
    window: int = RELIABLE_WINDOW
    _next_seq: int = 1
    # Highest sequence delivered with no gaps before it.
    _delivered_seq: int = 0
    _in_flight: dict[int, _InFlight] = field(default_factory=dict)
    _held: dict[int, Packet] = field(default_factory=dict)

    @property
    def delivered_seq(self) -> int:
        return int(self._delivered_seq)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def held_count(self) -> int:
        return len(self._held)

    def wrap(self, message: SessionMessage, *, reliable: bool, now_ms: int) -> Packet:
        seq = 0
        if reliable:
            seq = int(self._next_seq)
            self._next_seq += 1
        packet = Packet(seq=seq, ack=int(self._delivered_seq), reliable=bool(reliable), message=message)
        if reliable:
            self._in_flight[seq] = _InFlight(packet=packet, sent_at_ms=int(now_ms))
        return packet

    def unwrap(self, packet: Packet) -> tuple[list[SessionMessage], bool]:
        """Return `(deliverable_messages, was_duplicate)` for one inbound packet.

        Reliable packets that arrive ahead of a gap are held back until the gap fills.
        At most `window` packets past the delivered sequence are held; later ones are
        dropped and arrive again with the sender's resends.
        """
        self._release_acked(int(packet.ack))
        if not packet.reliable:
            return [packet.message], False

        seq = int(packet.seq)
        if seq <= 0:
            return [], False
        if seq <= self._delivered_seq or seq in self._held:
            return [], True
        if seq > self._delivered_seq + int(self.window):
            return [], False

        self._held[seq] = packet
        delivered: list[SessionMessage] = []
        while (self._delivered_seq + 1) in self._held:
            self._delivered_seq += 1
            delivered.append(self._held.pop(self._delivered_seq).message)
        return delivered, False

    def _release_acked(self, ack: int) -> None:
        if ack <= 0:
            return
        for seq in [seq for seq in self._in_flight if seq <= ack]:
            del self._in_flight[seq]

    def due_resends(self, *, now_ms: int) -> list[Packet]:
        out: list[Packet] = []
        for seq, entry in list(self._in_flight.items()):
            if int(now_ms) - entry.sent_at_ms < int(self.resend_ms):
                continue
            refreshed = Packet(seq=seq, ack=int(self._delivered_seq), reliable=True, message=entry.packet.message)
            self._in_flight[seq] = _InFlight(packet=refreshed, sent_at_ms=int(now_ms))
            out.append(refreshed)
        return out
