"""
Platform config directory for gtllm.

    Windows   %APPDATA%\\gtllm
    macOS     ~/Library/Application Support/gtllm
    Linux     ~/.gtllm

GTLLM_HOME overrides all of the above (tests, portable installs).
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from platformdirs import user_config_dir

APP_NAME = "gtllm"


def config_dir() -> Path:
    override = os.environ.get("GTLLM_HOME")
    if override:
        return Path(override).expanduser()
    if sys.platform in ("win32", "darwin"):
        return Path(user_config_dir(APP_NAME, appauthor=False, roaming=True))
    return Path.home() / f".{APP_NAME}"


def chats_dir() -> Path:
    return config_dir() / "chats"


def settings_path() -> Path:
    return config_dir() / "settings.toml"


def config_path() -> Path:
    override = os.environ.get("GTLLM_CONFIG")
    if override:
        return Path(override).expanduser()
    return config_dir() / "config.yaml"
