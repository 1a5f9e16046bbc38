from __future__ import annotations

from dataclasses import dataclass
import datetime as dt
import os
from pathlib import Path
from threading import Lock


@dataclass(slots=True)
class _TraceSink:
    path: Path
    role: str
    lines: int = 0


_TRACE_LOCK = Lock()
_SINK: _TraceSink | None = None


def _format_value(value: object) -> str:
    # Peer addresses are (host, port) pairs everywhere in the net stack.
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[1], int):
        return f"{value[0]}:{value[1]}"
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)}B:{bytes(value[:8]).hex()}>"
    text = str(value).replace("\n", "\\n")
    if not text or " " in text or "=" in text:
        text = '"' + text.replace('"', '\\"') + '"'
    return text


def _format_fields(fields: dict[str, object]) -> str:
    return " ".join(f"{key}={_format_value(fields[key])}" for key in sorted(fields))


def trace_file_name(role: str, *, pid: int, when: dt.datetime) -> str:
    return f"net-{role}-pid{pid}-{when.strftime('%Y%m%dT%H%M%S.%fZ')}.log"


def net_debug_log_path() -> Path | None:
    with _TRACE_LOCK:
        return None if _SINK is None else _SINK.path


def init_net_debug_log(*, base_dir: Path, role: str, host: str, port: int, **extra: object) -> Path:
    """Start a trace file under `<base_dir>/logs/net/` and route `net_debug_log` into it.

    Replaces any trace already open in this process.
    """
    role_name = str(role).strip().lower() or "unknown"
    pid = os.getpid()
    path = base_dir / "logs" / "net" / trace_file_name(role_name, pid=pid, when=dt.datetime.now(dt.timezone.utc))
    path.parent.mkdir(parents=True, exist_ok=True)

    global _SINK
    with _TRACE_LOCK:
        _SINK = _TraceSink(path=path, role=role_name)

    net_debug_log("init", role=role_name, host=str(host), port=int(port), pid=pid, **extra)
    return path


def net_debug_log(event: str, **fields: object) -> None:
    with _TRACE_LOCK:
        sink = _SINK
        if sink is None:
            return
        sink.lines += 1
        timestamp = dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")
        line = f"{timestamp} n={sink.lines} event={str(event).strip()}"
        payload = _format_fields(fields)
        if payload:
            line += f" {payload}"
        with sink.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def close_net_debug_log() -> None:
    global _SINK
    with _TRACE_LOCK:
        sink, _SINK = _SINK, None
    if sink is None or not sink.path.exists():
        return
    timestamp = dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")
    with sink.path.open("a", encoding="utf-8") as handle:
        handle.write(f"{timestamp} event=close lines={sink.lines}\n")


__all__ = [
    "close_net_debug_log",
    "init_net_debug_log",
    "net_debug_log",
    "net_debug_log_path",
    "trace_file_name",
]
