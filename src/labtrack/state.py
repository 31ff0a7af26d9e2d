"""Runtime locations and settings shared by the CLI and the web server."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

STATE_DIR_NAME = ".labtrack"
SERVER_INFO_FILENAME = "server_info.json"
SERVER_LOG_FILENAME = "server.log"
DEFAULT_PORT = 8124
DEFAULT_STORE_TIMEOUT = 5.0

HOME_ENV = "LABTRACK_HOME"
TIMEOUT_ENV = "LABTRACK_STORE_TIMEOUT"


def store_timeout() -> float:
    """Seconds a store call may take before it counts as failed."""
    raw = os.environ.get(TIMEOUT_ENV)
    if not raw:
        return DEFAULT_STORE_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_STORE_TIMEOUT
    return value if value > 0 else DEFAULT_STORE_TIMEOUT


def state_dir(base_path: Path) -> Path:
    return base_path / STATE_DIR_NAME


def find_state_dir(start: Path) -> Optional[Path]:
    for candidate in [start, *start.parents]:
        candidate_state = candidate / STATE_DIR_NAME
        if candidate_state.exists():
            return candidate_state
    return None


def _global_root() -> Path:
    root = Path(os.environ.get(HOME_ENV) or Path.home() / ".labtrack-server")
    root.mkdir(parents=True, exist_ok=True)
    return root


def global_runtime_dir() -> Path:
    return _global_root()


def server_log_path() -> Path:
    return _global_root() / SERVER_LOG_FILENAME


def read_server_info() -> Optional[Dict[str, Any]]:
    path = _global_root() / SERVER_INFO_FILENAME
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None


def write_server_info(info: Dict[str, Any]) -> None:
    path = _global_root() / SERVER_INFO_FILENAME
    path.write_text(json.dumps(info, indent=2), encoding="utf-8")


def clear_server_info() -> None:
    path = _global_root() / SERVER_INFO_FILENAME
    if path.exists():
        path.unlink()
