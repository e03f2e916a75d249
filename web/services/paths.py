from __future__ import annotations

import os


DEFAULT_DATA_DIR = "/var/lib/nginx-whitelist-manager"


def data_dir() -> str:
    return (os.environ.get("DATA_DIR") or "").strip() or DEFAULT_DATA_DIR


def data_path(name: str) -> str:
    """Default location for a state file when no per-file override is set."""
    return os.path.join(data_dir(), name)
