from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

import websockets

from .errors import TransportError
from .selection import request_id_of

logger = logging.getLogger("layrr.bridge.transport")

TERMINAL_STATUSES = frozenset({"complete", "error"})

ResponseHandler = Callable[[dict[str, Any]], None]


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class CorrelatedTransport:
    """Request/response multiplexer over one WebSocket connection.

    Each `send` gets a fresh id (unique for this instance) and an optional
    handler. Replies are routed by id; the handler stays registered while the
    status is `pending` and is removed on `complete` / `error`. Losing the
    connection fails every outstanding request instead of leaving it waiting.
    """

    def __init__(
        self,
        url: str,
        *,
        base_delay: float = 1.0,
        max_attempts: int = 5,
        open_timeout: float = 5.0,
        on_state_change: Callable[[ConnectionState], None] | None = None,
    ) -> None:
        self.url = url
        self.base_delay = max(0.0, float(base_delay))
        self.max_attempts = max(0, int(max_attempts))
        self.open_timeout = float(open_timeout)
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._connected = threading.Event()
        self._finished = threading.Event()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ws: Any | None = None

        self._state = ConnectionState.IDLE
        self._attempt = 0
        self._last_error: str | None = None

        self._next_id = 1
        self._pending: dict[int, ResponseHandler | None] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> bool:
        """Start the connection thread; return True once connected within wait_timeout."""
        if self._thread is not None and self._thread.is_alive():
            return self._connected.wait(timeout=max(0.0, float(wait_timeout)))
        self._stop.clear()
        self._finished.clear()
        self._connected.clear()
        with self._lock:
            self._state = ConnectionState.IDLE
            self._attempt = 0

        t = threading.Thread(target=self._run_thread, name="layrr-bridge-transport", daemon=True)
        self._thread = t
        t.start()
        return self._connected.wait(timeout=max(0.0, float(wait_timeout)))

    def close(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        with self._lock:
            ws = self._ws
        if loop is not None and ws is not None:
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(ws.close(), loop).result(timeout=timeout)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._fail_pending("transport closed")
        self._set_state(ConnectionState.CLOSED)

    def wait_until_finished(self, *, timeout: float | None = None) -> bool:
        """Block until the connection loop has given up (DISCONNECTED) or was closed."""
        return self._finished.wait(timeout=timeout)

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_connected(self) -> bool:
        with self._lock:
            return self._ws is not None and self._state is ConnectionState.CONNECTED

    def pending_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "url": self.url,
                "state": self._state.value,
                "attempt": self._attempt,
                "maxAttempts": self.max_attempts,
                "pending": len(self._pending),
                **({"lastError": self._last_error} if self._last_error else {}),
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, payload: dict[str, Any], on_response: ResponseHandler | None = None, *, timeout: float = 5.0) -> int:
        if not isinstance(payload, dict):
            raise TransportError("payload must be a JSON object")

        with self._lock:
            ws = self._ws
            loop = self._loop
            if ws is None or loop is None or self._state is not ConnectionState.CONNECTED:
                raise TransportError(f"Bridge transport is not connected (state={self._state.value})")
            req_id = self._next_id
            self._next_id += 1
            # Register before writing so a fast reply always finds its handler.
            self._pending[req_id] = on_response

        msg = dict(payload)
        msg["id"] = req_id
        try:
            asyncio.run_coroutine_threadsafe(ws.send(json.dumps(msg, ensure_ascii=False)), loop).result(timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._pending.pop(req_id, None)
            raise TransportError(f"Bridge transport send failed: {exc}") from exc

        logger.info("transport_sent id=%s", req_id)
        return req_id

    def request(self, payload: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        """Send and block until the terminal response; returns that message."""
        fut: Future = Future()

        def _on_response(msg: dict[str, Any]) -> None:
            if msg.get("status") in TERMINAL_STATUSES and not fut.done():
                fut.set_result(msg)

        req_id = self.send(payload, _on_response)
        try:
            return fut.result(timeout=timeout)
        except FutureTimeoutError as exc:
            with self._lock:
                self._pending.pop(req_id, None)
            raise TransportError(f"Bridge request {req_id} timed out after {timeout} seconds") from exc

    def on_receive(self, raw: str | bytes) -> None:
        """Route one inbound message to its handler. Never raises."""
        try:
            msg = json.loads(raw)
        except Exception:
            logger.warning("transport_drop reason=invalid-json")
            return
        if not isinstance(msg, dict):
            logger.warning("transport_drop reason=not-an-object")
            return

        req_id = request_id_of(msg)
        status = msg.get("status")
        terminal = status in TERMINAL_STATUSES
        with self._lock:
            if req_id is None or req_id not in self._pending:
                found = False
                handler = None
            else:
                found = True
                handler = self._pending.pop(req_id) if terminal else self._pending[req_id]

        if not found:
            logger.warning("transport_drop reason=no-handler id=%s status=%s", msg.get("id"), status)
            return
        logger.info("transport_received id=%s status=%s", req_id, status)
        if handler is None:
            return
        try:
            handler(msg)
        except Exception:  # noqa: BLE001
            logger.exception("transport_handler_failed id=%s", req_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            if self._state is state:
                return
            if self._state is ConnectionState.CLOSED:
                return
            self._state = state
        cb = self._on_state_change
        if cb is not None:
            try:
                cb(state)
            except Exception:  # noqa: BLE001
                logger.exception("transport_state_callback_failed state=%s", state.value)

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for req_id, handler in pending:
            logger.warning("transport_failed_pending id=%s reason=%s", req_id, reason)
            if handler is None:
                continue
            try:
                handler({"id": req_id, "status": "error", "stage": "transport", "error": reason})
            except Exception:  # noqa: BLE001
                logger.exception("transport_handler_failed id=%s", req_id)

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run_async())
        finally:
            self._finished.set()

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()

        while not self._stop.is_set():
            self._set_state(ConnectionState.CONNECTING if self._attempt == 0 else ConnectionState.RECONNECTING)
            reason = "connection closed"
            try:
                async with websockets.connect(self.url, open_timeout=self.open_timeout, ping_interval=None) as ws:
                    # close() sets _stop before reading _ws under the lock, so either
                    # it sees this socket or this check sees the stop.
                    with self._lock:
                        stopped = self._stop.is_set()
                        if not stopped:
                            self._ws = ws
                            self._attempt = 0
                            self._last_error = None
                    if stopped:
                        logger.info("transport_connect_abandoned url=%s reason=closed", self.url)
                        await ws.close()
                        break
                    self._set_state(ConnectionState.CONNECTED)
                    self._connected.set()
                    logger.info("transport_connected url=%s", self.url)
                    async for raw in ws:
                        self.on_receive(raw)
            except Exception as exc:  # noqa: BLE001
                reason = f"connection lost: {exc}"

            with self._lock:
                self._ws = None
                self._last_error = reason
            self._connected.clear()
            self._fail_pending(reason)

            if self._stop.is_set():
                break
            with self._lock:
                attempt = self._attempt
            if attempt >= self.max_attempts:
                logger.error("transport_disconnected url=%s attempts=%s reason=%s", self.url, attempt, reason)
                self._set_state(ConnectionState.DISCONNECTED)
                return

            delay = self.base_delay * (2**attempt)
            with self._lock:
                self._attempt = attempt + 1
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                "transport_reconnect url=%s delay=%.2fs attempt=%s/%s",
                self.url,
                delay,
                attempt + 1,
                self.max_attempts,
            )
            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        deadline = time.time() + delay
        while not self._stop.is_set():
            remaining = deadline - time.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(0.05, remaining))
