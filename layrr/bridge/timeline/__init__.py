"""Git-backed checkpoint timeline for the bridge.

Keep this package import light: only the manager and its value types are
re-exported; the git runner and lock stay internal.
"""

from __future__ import annotations

from .manager import Checkpoint, CheckpointManager, TimelineState, TimelineStatus

__all__ = ["Checkpoint", "CheckpointManager", "TimelineState", "TimelineStatus"]
