from __future__ import annotations

from dataclasses import dataclass, field
import random
from typing import Protocol

from .protocol import LOBBY_CODE_ALPHABET, LOBBY_CODE_LENGTH, PeerAddr

MAX_CODE_ATTEMPTS = 1000


class RegistryError(RuntimeError):
    pass


class LobbyNotFoundError(RegistryError):
    def __init__(self, code: str) -> None:
        super().__init__(f"lobby {code!r} not found")
        self.code = str(code)


class LobbyCodeExhaustedError(RegistryError):
    pass


class _Chooser(Protocol):
    def choice(self, seq: str) -> str: ...


def normalize_lobby_code(code: str) -> str:
    return str(code).strip().upper()


def generate_lobby_code(rng: _Chooser, *, length: int = LOBBY_CODE_LENGTH) -> str:
    return normalize_lobby_code("".join(rng.choice(LOBBY_CODE_ALPHABET) for _ in range(int(length))))


@dataclass(frozen=True, slots=True)
class HostEntry:
    client_id: int
    observed_addr: PeerAddr


@dataclass(slots=True)
class LobbyRegistry:
    """In-memory lobby table plus the reverse client -> code index.

    Both maps are only ever changed together, so a code is in `_hosts` exactly
    when its owner is in `_codes_by_client`.
    """

    rng: _Chooser = field(default_factory=random.SystemRandom)
    code_length: int = LOBBY_CODE_LENGTH
    max_code_attempts: int = MAX_CODE_ATTEMPTS
    _hosts: dict[str, HostEntry] = field(init=False, default_factory=dict)
    _codes_by_client: dict[int, str] = field(init=False, default_factory=dict)

    def __len__(self) -> int:
        return len(self._hosts)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and normalize_lobby_code(code) in self._hosts

    def register(self, client_id: int, observed_addr: PeerAddr) -> str:
        # A client owns at most one lobby; hosting again replaces the old code.
        self.unregister(client_id)

        code = self._free_code()
        self._hosts[code] = HostEntry(client_id=int(client_id), observed_addr=observed_addr)
        self._codes_by_client[int(client_id)] = code
        return code

    def lookup(self, code: str) -> HostEntry:
        key = normalize_lobby_code(code)
        entry = self._hosts.get(key)
        if entry is None:
            raise LobbyNotFoundError(key)
        return entry

    def unregister(self, client_id: int) -> str | None:
        code = self._codes_by_client.pop(int(client_id), None)
        if code is None:
            return None
        self._hosts.pop(code, None)
        return code

    def code_for(self, client_id: int) -> str | None:
        return self._codes_by_client.get(int(client_id))

    def entries(self) -> dict[str, HostEntry]:
        return dict(self._hosts)

    def _free_code(self) -> str:
        for _ in range(int(self.max_code_attempts)):
            code = generate_lobby_code(self.rng, length=int(self.code_length))
            if code not in self._hosts:
                return code
        raise LobbyCodeExhaustedError(
            f"no free lobby code after {self.max_code_attempts} attempts ({len(self._hosts)} lobbies open)"
        )
