"""
Command-line entry point for the Layrr bridge.

`serve` runs the WebSocket bridge that feeds selection instructions to the
coding agent; `checkpoint` drives the git checkpoint timeline; `send` pushes a
single instruction to a running bridge (handy for scripting and debugging).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from .agent_session import AgentSession, CliAgentRunner
from .config import BridgeConfig
from .coordinator import BridgeCoordinator
from .errors import BridgeError, CheckpointError, NoRepositoryError, NothingToCheckpointError, TransportError
from .gateway import BridgeServer
from .screenshot import ScreenshotStore
from .timeline import CheckpointManager
from .transport import CorrelatedTransport

logger = logging.getLogger("layrr.bridge")

__all__ = ["build_parser", "main"]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOTHING_TO_CHECKPOINT = 2
EXIT_NO_REPOSITORY = 3


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def _apply_overrides(config: BridgeConfig, args: argparse.Namespace) -> BridgeConfig:
    if getattr(args, "project", None):
        config.project_dir = str(Path(args.project).expanduser().resolve())
    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None):
        config.port = int(args.port)
    if getattr(args, "agent_cmd", None):
        config.agent_command = args.agent_cmd
    if getattr(args, "branch", None):
        config.timeline_branch = args.branch
    return config


def _checkpoint_manager(config: BridgeConfig) -> CheckpointManager:
    return CheckpointManager(
        config.project_dir,
        timeline_branch=config.timeline_branch,
        author_name=config.author_name,
        author_email=config.author_email,
        lock_timeout=config.lock_timeout,
    )


def cmd_serve(config: BridgeConfig) -> int:
    runner = CliAgentRunner(config.agent_command, cwd=config.project_dir, timeout=config.agent_timeout)
    session = AgentSession(runner, busy_timeout=config.busy_timeout)
    screenshots = ScreenshotStore(config.screenshot_dir) if config.screenshot_dir else None
    coordinator = BridgeCoordinator(session, screenshots=screenshots)
    server = BridgeServer(
        coordinator,
        host=config.host,
        port=config.port,
        max_message_bytes=config.max_message_bytes,
    )

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:  # noqa: ANN001
        logger.info("signal=%s stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _on_signal)

    try:
        server.start()
    except RuntimeError as exc:
        logger.error("serve_failed: %s", exc)
        return EXIT_ERROR

    logger.info(
        "bridge_ready project=%s agent=%r url=%s",
        config.project_dir,
        config.agent_command,
        config.ws_url,
    )
    try:
        while not stop.wait(timeout=0.5):
            pass
    finally:
        session.close()
        server.stop()
    return EXIT_OK


def cmd_checkpoint(config: BridgeConfig, args: argparse.Namespace) -> int:
    manager = _checkpoint_manager(config)
    try:
        if args.action == "create":
            _print_json(manager.create_checkpoint(args.message).to_dict())
        elif args.action == "list":
            current = manager.current_checkpoint()
            _print_json(
                [
                    {**cp.to_dict(), **({"current": True} if cp.full_id == current else {})}
                    for cp in manager.list_checkpoints(args.limit)
                ]
            )
        elif args.action == "current":
            _print_json({"hash": manager.current_checkpoint()})
        elif args.action == "travel":
            _print_json(manager.travel_to(args.checkpoint).to_dict())
        elif args.action == "status":
            _print_json(manager.status().to_dict())
    except NothingToCheckpointError as exc:
        logger.warning("%s", exc)
        return EXIT_NOTHING_TO_CHECKPOINT
    except NoRepositoryError as exc:
        logger.error("%s", exc)
        return EXIT_NO_REPOSITORY
    except (CheckpointError, ValueError) as exc:
        logger.error("checkpoint_%s_failed: %s", args.action, exc)
        return EXIT_ERROR
    return EXIT_OK


def cmd_send(config: BridgeConfig, args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {}
    if args.selection:
        raw = json.loads(Path(args.selection).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            logger.error("selection file must contain a JSON object")
            return EXIT_ERROR
        payload.update(raw)
    payload["instruction"] = args.instruction
    payload.setdefault("area", {"x": 0, "y": 0, "width": 0, "height": 0, "elementCount": 0})
    payload.setdefault("elements", [])

    transport = CorrelatedTransport(
        args.url or config.ws_url,
        base_delay=config.reconnect_base_delay,
        max_attempts=config.reconnect_max_attempts,
    )
    if not transport.start(wait_timeout=args.connect_timeout):
        logger.error("send_failed: could not connect to %s", transport.url)
        transport.close()
        return EXIT_ERROR
    try:
        reply = transport.request(payload, timeout=args.timeout)
    except TransportError as exc:
        logger.error("send_failed: %s", exc)
        return EXIT_ERROR
    finally:
        transport.close()
    _print_json(reply)
    return EXIT_OK if reply.get("status") == "complete" else EXIT_ERROR


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="layrr-bridge", description="Visual edit bridge for a coding agent")
    parser.add_argument("--project", help="project directory (default: LAYRR_PROJECT_DIR or cwd)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the WebSocket bridge")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--agent-cmd", dest="agent_cmd", help="agent command (instruction is written to stdin)")

    cp = sub.add_parser("checkpoint", help="manage the checkpoint timeline")
    cp.add_argument("--branch", help="timeline branch name")
    cp_sub = cp.add_subparsers(dest="action", required=True)
    create = cp_sub.add_parser("create")
    create.add_argument("message")
    lst = cp_sub.add_parser("list")
    lst.add_argument("--limit", type=int, default=50)
    cp_sub.add_parser("current")
    travel = cp_sub.add_parser("travel")
    travel.add_argument("checkpoint")
    cp_sub.add_parser("status")

    send = sub.add_parser("send", help="send one instruction to a running bridge")
    send.add_argument("instruction")
    send.add_argument("--selection", help="JSON file with area/elements")
    send.add_argument("--url")
    send.add_argument("--timeout", type=float, default=None)
    send.add_argument("--connect-timeout", dest="connect_timeout", type=float, default=5.0)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=getattr(logging, (os.environ.get("LAYRR_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    config = _apply_overrides(BridgeConfig.from_env(), args)

    try:
        if args.command == "serve":
            return cmd_serve(config)
        if args.command == "checkpoint":
            return cmd_checkpoint(config, args)
        if args.command == "send":
            return cmd_send(config, args)
    except BridgeError as exc:
        logger.error("%s", exc)
        return EXIT_ERROR
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
