from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    # Ensure the local `src/` tree wins over any other editable install that may exist.
    src_dir = Path(__file__).resolve().parents[1] / "src"
    src_str = str(src_dir)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)
    config.addinivalue_line("markers", "loopback: tests that open real UDP sockets on 127.0.0.1")


@pytest.fixture(autouse=True)
def _no_trace_log():
    from punchthrough.debug_log import close_net_debug_log

    close_net_debug_log()
    yield
    close_net_debug_log()
