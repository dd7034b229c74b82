from __future__ import annotations

import os
from pathlib import Path


def bridge_home() -> Path:
    env = os.environ.get("TOPICBRIDGE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".topicbridge").resolve()


def ensure_home() -> Path:
    home = bridge_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def state_dir() -> Path:
    return ensure_home() / "state"


def temp_dir() -> Path:
    return ensure_home() / "tmp"


def settings_path() -> Path:
    return ensure_home() / "bridge.yaml"


def chat_lock_path(chat_id: str) -> Path:
    safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in str(chat_id))
    return ensure_home() / "locks" / f"chat_{safe or 'default'}.lock"
