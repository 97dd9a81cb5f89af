from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import threading
import time
from typing import Any

import websockets
from websockets.datastructures import Headers as WsHeaders
from websockets.http11 import Response as WsResponse

from .coordinator import BridgeCoordinator
from .errors import InstructionError, TransportError
from .selection import Instruction, request_id_of

WS_MESSAGE_PATH = "/__layrr/ws/message"
HEALTH_PATH = "/__layrr/health"

logger = logging.getLogger("layrr.bridge.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


class BridgeServer:
    """Local WebSocket endpoint the in-page selection script talks to.

    Design goals:
    - Sync API for callers (start / stop / status), async server in a daemon thread.
    - Every accepted request gets an immediate `pending` and exactly one terminal
      `complete` or `error` on the same id.
    - The agent call runs in a worker thread so the loop keeps answering pings
      and acknowledging new requests.
    """

    def __init__(
        self,
        coordinator: BridgeCoordinator,
        *,
        host: str = "127.0.0.1",
        port: int = 8766,
        max_message_bytes: int = 10_000_000,
    ) -> None:
        self.coordinator = coordinator
        self.host = host
        self.port = int(port)
        self.max_message_bytes = int(max_message_bytes)

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stop_event: asyncio.Event | None = None

        self._server: Any | None = None
        self._bind_error: str | None = None
        self._started_at_ms = _now_ms()
        self._connections = 0
        self._handled = 0
        self._failed = 0
        self._in_progress: set[int] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="layrr-bridge-gateway", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Bridge gateway failed to start on {self.host}:{self.port}")
        with self._lock:
            bind_error = self._bind_error
            server = self._server
        if server is None:
            raise RuntimeError(f"Bridge gateway bind failed on {self.host}:{self.port}: {bind_error or 'unknown error'}")

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None:
            with contextlib.suppress(Exception):
                loop.call_soon_threadsafe(stop_event.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "listening": self._server is not None,
                "host": self.host,
                "port": self.port,
                "path": WS_MESSAGE_PATH,
                "connections": self._connections,
                "handled": self._handled,
                "failed": self._failed,
                "inProgress": sorted(self._in_progress),
                "serverStartedAtMs": self._started_at_ms,
                "agentBusy": self.coordinator.session.busy,
                **({"bindError": self._bind_error} if self._bind_error else {}),
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        try:
            server = await websockets.serve(
                self._handler,
                self.host,
                self.port,
                process_request=self._process_request,
                max_size=self.max_message_bytes,
                ping_interval=None,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = str(exc)
            logger.error("gateway_bind_failed host=%s port=%s error=%s", self.host, self.port, exc)
            self._ready.set()
            return

        with self._lock:
            self._server = server
            if not self.port:
                # Port 0 asks the OS for a free port; report the real one.
                with contextlib.suppress(Exception):
                    self.port = int(next(iter(server.sockets)).getsockname()[1])
        logger.info("gateway_listening url=ws://%s:%s%s", self.host, self.port, WS_MESSAGE_PATH)
        self._ready.set()

        try:
            await self._stop_event.wait()
        finally:
            with self._lock:
                self._server = None
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
            logger.info("gateway_stopped")

    def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        path = str(getattr(request, "path", "") or "").split("?", 1)[0]
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:
            upgrade = ""

        if path == WS_MESSAGE_PATH and upgrade == "websocket":
            return None
        if path == HEALTH_PATH:
            return self._json_response(200, "OK", {"type": "layrrBridge", "pid": os.getpid(), **self.status()})
        return self._json_response(404, "Not Found", {"error": "not found"})

    @staticmethod
    def _json_response(code: int, reason: str, payload: dict[str, Any]) -> WsResponse:
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = WsHeaders()
        headers["Content-Type"] = "application/json"
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        headers["Content-Length"] = str(len(body))
        return WsResponse(code, reason, headers, body)

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        with self._lock:
            self._connections += 1
        logger.info("gateway_client_connected remote=%s", getattr(ws, "remote_address", None))

        queue: asyncio.Queue[Instruction | None] = asyncio.Queue()
        worker = asyncio.create_task(self._worker(ws, queue))
        try:
            async for raw in ws:
                instruction = await self._accept(ws, raw)
                if instruction is not None:
                    await queue.put(instruction)
        except Exception as exc:  # noqa: BLE001
            logger.info("gateway_client_dropped error=%s", exc)
        finally:
            # The client already failed everything it was waiting on; only the
            # in-flight instruction (if any) is allowed to finish.
            self._drop_queued(queue)
            await queue.put(None)
            with contextlib.suppress(Exception):
                await worker
            with self._lock:
                self._connections -= 1
            logger.info("gateway_client_disconnected")

    async def _accept(self, ws, raw: Any) -> Instruction | None:  # type: ignore[no-untyped-def]
        try:
            msg = json.loads(raw)
        except Exception:
            logger.warning("gateway_drop reason=invalid-json bytes=%s", len(raw or ""))
            return None

        req_id = request_id_of(msg)
        if req_id is None:
            logger.warning("gateway_drop reason=missing-id")
            return None

        try:
            instruction = Instruction.from_message(msg)
        except TransportError as exc:
            logger.warning("gateway_reject id=%s error=%s", req_id, exc)
            await self._reply(ws, InstructionError(req_id, "transport", str(exc)).to_dict())
            return None

        await self._reply(ws, {"id": req_id, "status": "pending"})
        return instruction

    async def _worker(self, ws, queue: asyncio.Queue[Instruction | None]) -> None:  # type: ignore[no-untyped-def]
        while True:
            instruction = await queue.get()
            if instruction is None:
                return
            req_id = instruction.request_id
            with self._lock:
                self._in_progress.add(req_id)
            try:
                await asyncio.to_thread(self.coordinator.handle, instruction)
            except InstructionError as exc:
                self._count(ok=False)
                await self._reply(ws, exc.to_dict())
            except Exception as exc:  # noqa: BLE001
                logger.exception("gateway_unexpected_failure id=%s", req_id)
                self._count(ok=False)
                await self._reply(ws, InstructionError(req_id, "bridge", str(exc)).to_dict())
            else:
                self._count(ok=True)
                await self._reply(ws, {"id": req_id, "status": "complete", "message": "Changes applied"})
            finally:
                with self._lock:
                    self._in_progress.discard(req_id)

    def _drop_queued(self, queue: asyncio.Queue[Instruction | None]) -> None:
        while True:
            try:
                instruction = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if instruction is None:
                continue
            self._count(ok=False)
            logger.warning("gateway_drop reason=client-gone id=%s", instruction.request_id)

    def _count(self, *, ok: bool) -> None:
        with self._lock:
            if ok:
                self._handled += 1
            else:
                self._failed += 1

    async def _reply(self, ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        try:
            await ws.send(json.dumps(payload, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            logger.warning("gateway_reply_failed id=%s status=%s error=%s", payload.get("id"), payload.get("status"), exc)
