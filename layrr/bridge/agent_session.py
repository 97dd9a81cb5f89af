"""Exclusive, serialized access to the long-running coding agent conversation.

The agent keeps conversational context between instructions, so two
instructions must never interleave. `AgentSession.submit` enforces that with a
FIFO ticket queue: callers wait their turn in submission order, optionally
bounded by `busy_timeout` (0 turns the queue into a fail-fast busy check).
"""

from __future__ import annotations

import contextlib
import logging
import shlex
import subprocess
import threading
import time
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from .errors import AgentBusyError, AgentError, AgentProcessError, AgentTaskError

logger = logging.getLogger("layrr.bridge.agent")

_STDERR_TAIL_CHARS = 2000


class AgentRunner(Protocol):
    def run(self, text: str) -> None: ...

    def cancel(self) -> None: ...


class CliAgentRunner:
    """Runs one agent CLI invocation per instruction inside the project directory.

    The default command continues the most recent conversation, so context
    survives across invocations while each instruction still has a clear
    start and end.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        name: str = "agent",
    ) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]
        if not self.command:
            raise ValueError("agent command is empty")
        self.cwd = str(cwd) if cwd is not None else None
        self.timeout = timeout
        self.name = name
        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None
        self._cancelled = False

    def run(self, text: str) -> None:
        with self._lock:
            self._cancelled = False
        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=self.cwd,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(f"agent command not found: {self.command[0]}", session=self.name) from exc
        except OSError as exc:
            raise AgentProcessError(f"agent failed to start: {exc}", session=self.name) from exc

        with self._lock:
            self._proc = proc
        started = time.time()
        try:
            out, err = proc.communicate(text, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            self._kill(proc)
            raise AgentProcessError(f"agent timed out after {self.timeout} seconds", session=self.name) from exc
        finally:
            with self._lock:
                self._proc = None

        with self._lock:
            cancelled = self._cancelled
        if cancelled:
            raise AgentProcessError("agent run cancelled", session=self.name)
        if proc.returncode != 0:
            tail = (err or "").strip()[-_STDERR_TAIL_CHARS:]
            raise AgentTaskError(
                tail or f"agent exited with status {proc.returncode}",
                session=self.name,
                returncode=proc.returncode,
            )
        logger.debug(
            "agent_output session=%s elapsed=%.1fs output=%s",
            self.name,
            time.time() - started,
            (out or "").strip()[-500:],
        )

    def cancel(self) -> None:
        with self._lock:
            proc = self._proc
            self._cancelled = proc is not None
        if proc is not None:
            self._kill(proc)

    @staticmethod
    def _kill(proc: subprocess.Popen, timeout: float = 2.0) -> None:
        with contextlib.suppress(Exception):
            proc.terminate()
        deadline = time.time() + timeout
        while time.time() < deadline:
            if proc.poll() is not None:
                break
            time.sleep(0.05)
        else:
            with contextlib.suppress(Exception):
                proc.kill()
        with contextlib.suppress(Exception):
            proc.communicate(timeout=timeout)


class AgentSession:
    """Single exclusive handle to the agent; `submit` blocks until the agent is done."""

    def __init__(self, runner: AgentRunner, *, busy_timeout: float | None = None, name: str = "agent") -> None:
        self.runner = runner
        self.busy_timeout = busy_timeout
        self.name = name

        self._cond = threading.Condition()
        self._queue: deque[int] = deque()
        self._next_ticket = 1
        self._in_flight: int | None = None
        self._closed = False

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._in_flight is not None

    @property
    def queued(self) -> int:
        with self._cond:
            return len(self._queue)

    def submit(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValueError("instruction text is required")

        ticket = self._acquire()
        started = time.time()
        logger.info("agent_submit session=%s ticket=%s chars=%s", self.name, ticket, len(text))
        try:
            self.runner.run(text)
        except AgentError as exc:
            if exc.session is None:
                exc.session = self.name
            logger.error("agent_failed session=%s ticket=%s stage=%s error=%s", self.name, ticket, exc.stage, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("agent_crashed session=%s ticket=%s error=%s", self.name, ticket, exc)
            raise AgentProcessError(f"agent runner crashed: {exc}", session=self.name) from exc
        finally:
            self._release(ticket)
        logger.info("agent_done session=%s ticket=%s elapsed=%.1fs", self.name, ticket, time.time() - started)

    def cancel(self) -> None:
        """Abort the in-flight instruction (if any); its submit raises AgentProcessError."""
        with self._cond:
            in_flight = self._in_flight
        if in_flight is not None:
            logger.info("agent_cancel session=%s ticket=%s", self.name, in_flight)
            self.runner.cancel()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self.cancel()

    def _acquire(self) -> int:
        with self._cond:
            if self._closed:
                raise AgentProcessError("agent session is closed", session=self.name)
            ticket = self._next_ticket
            self._next_ticket += 1
            self._queue.append(ticket)

            deadline = None if self.busy_timeout is None else time.time() + max(0.0, self.busy_timeout)
            while self._in_flight is not None or self._queue[0] != ticket:
                if self._closed:
                    self._queue.remove(ticket)
                    self._cond.notify_all()
                    raise AgentProcessError("agent session is closed", session=self.name)
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    ahead = self._queue.index(ticket) + (1 if self._in_flight is not None else 0)
                    self._queue.remove(ticket)
                    self._cond.notify_all()
                    raise AgentBusyError(
                        f"agent is busy ({ahead} instruction(s) ahead); retry later",
                        session=self.name,
                    )
                self._cond.wait(timeout=remaining)

            # The in-flight run may finish before a closed waiter wakes up.
            if self._closed:
                self._queue.remove(ticket)
                self._cond.notify_all()
                raise AgentProcessError("agent session is closed", session=self.name)
            self._queue.popleft()
            self._in_flight = ticket
            return ticket

    def _release(self, ticket: int) -> None:
        with self._cond:
            if self._in_flight == ticket:
                self._in_flight = None
            self._cond.notify_all()
