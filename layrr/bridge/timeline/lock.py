from __future__ import annotations

import contextlib
import io
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

LOCK_FILE_NAME = "layrr-checkpoint.lock"


@dataclass(slots=True)
class ProjectLock:
    """Single-writer lock for one project's checkpoint operations.

    Combines an in-process re-entrant lock with an inter-process file lock
    inside the git directory, so two bridge processes on the same project also
    take turns. On platforms where file locking isn't available, only the
    in-process lock applies.
    """

    path: Path
    _local: threading.RLock = field(default_factory=threading.RLock)
    _fp: io.TextIOWrapper | None = None
    _depth: int = 0

    def acquire(self, *, timeout: float = 10.0) -> bool:
        deadline = time.time() + max(0.0, float(timeout))
        if not self._local.acquire(timeout=max(0.0, float(timeout))):
            return False
        if self._depth > 0:
            self._depth += 1
            return True
        while True:
            if self._try_file_lock():
                self._depth = 1
                return True
            if time.time() >= deadline:
                self._local.release()
                return False
            time.sleep(0.05)

    def release(self) -> None:
        if self._depth <= 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._release_file_lock()
        self._local.release()

    def _try_file_lock(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fp = open(self.path, "a+", encoding="utf-8")  # noqa: SIM115

        try:
            if sys.platform == "win32":
                import msvcrt  # type: ignore

                try:
                    msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
                except OSError:
                    with contextlib.suppress(Exception):
                        fp.close()
                    return False
            else:
                import fcntl

                try:
                    fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError:
                    with contextlib.suppress(Exception):
                        fp.close()
                    return False
        except ImportError:
            pass

        with contextlib.suppress(Exception):
            fp.seek(0)
            fp.truncate(0)
            fp.write(f"pid={os.getpid()}\n")
            fp.flush()
        self._fp = fp
        return True

    def _release_file_lock(self) -> None:
        fp = self._fp
        self._fp = None
        if fp is None:
            return
        with contextlib.suppress(Exception):
            if sys.platform == "win32":
                import msvcrt  # type: ignore

                msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
        with contextlib.suppress(Exception):
            fp.close()
