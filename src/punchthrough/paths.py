from __future__ import annotations

import os
from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "punchthrough"
RUNTIME_DIR_ENV = "PUNCHTHROUGH_RUNTIME_DIR"


def _app_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def default_runtime_dir() -> Path:
    override = os.environ.get(RUNTIME_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(_app_dirs().user_data_path)
