from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude --print --continue"
DEFAULT_TIMELINE_BRANCH = "layrr-timeline"
DEFAULT_AUTHOR_NAME = "Layrr"
DEFAULT_AUTHOR_EMAIL = "hitman@layrr.dev"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_str(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except Exception:
        return default


def _env_float(name: str, default: float | None, *, keep_zero: bool = False) -> float | None:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except Exception:
        return default
    # Negative (and 0 unless keep_zero) means "no limit" for the optional timeouts.
    if default is None and (value < 0 or (value == 0 and not keep_zero)):
        return None
    return value


@dataclass
class BridgeConfig:
    project_dir: str
    host: str = "127.0.0.1"
    port: int = 8766
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_timeout: float | None = None
    busy_timeout: float | None = None
    timeline_branch: str = DEFAULT_TIMELINE_BRANCH
    author_name: str = DEFAULT_AUTHOR_NAME
    author_email: str = DEFAULT_AUTHOR_EMAIL
    screenshot_dir: str | None = None
    reconnect_base_delay: float = 1.0
    reconnect_max_attempts: int = 5
    max_message_bytes: int = 10_000_000
    lock_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> BridgeConfig:
        project = expand_path(_env_str("LAYRR_PROJECT_DIR") or os.getcwd())
        screenshot_dir = _env_str("LAYRR_SCREENSHOT_DIR")
        base_delay = _env_float("LAYRR_RECONNECT_BASE_DELAY", 1.0)
        lock_timeout = _env_float("LAYRR_CHECKPOINT_LOCK_TIMEOUT", 10.0)
        return cls(
            project_dir=project,
            host=_env_str("LAYRR_BRIDGE_HOST") or "127.0.0.1",
            port=_env_int("LAYRR_BRIDGE_PORT", 8766),
            agent_command=_env_str("LAYRR_AGENT_CMD") or DEFAULT_AGENT_COMMAND,
            agent_timeout=_env_float("LAYRR_AGENT_TIMEOUT", None),
            busy_timeout=_env_float("LAYRR_AGENT_BUSY_TIMEOUT", None, keep_zero=True),
            timeline_branch=_env_str("LAYRR_TIMELINE_BRANCH") or DEFAULT_TIMELINE_BRANCH,
            author_name=_env_str("LAYRR_CHECKPOINT_AUTHOR_NAME") or DEFAULT_AUTHOR_NAME,
            author_email=_env_str("LAYRR_CHECKPOINT_AUTHOR_EMAIL") or DEFAULT_AUTHOR_EMAIL,
            screenshot_dir=expand_path(screenshot_dir) if screenshot_dir else None,
            reconnect_base_delay=base_delay if base_delay is not None else 1.0,
            reconnect_max_attempts=max(0, _env_int("LAYRR_RECONNECT_MAX_ATTEMPTS", 5)),
            max_message_bytes=_env_int("LAYRR_MAX_MESSAGE_BYTES", 10_000_000),
            lock_timeout=lock_timeout if lock_timeout is not None else 10.0,
        )

    @property
    def ws_url(self) -> str:
        from .gateway import WS_MESSAGE_PATH

        return f"ws://{self.host}:{self.port}{WS_MESSAGE_PATH}"
