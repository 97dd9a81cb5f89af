from __future__ import annotations

import logging
import time

from .agent_session import AgentSession
from .errors import AgentError, InstructionError
from .formatter import format_instruction
from .screenshot import ScreenshotError, ScreenshotStore, decode_screenshot
from .selection import Instruction

logger = logging.getLogger("layrr.bridge")


class BridgeCoordinator:
    """Format a selection instruction and hand it to the agent session.

    This is the one place every instruction passes through, so it owns the
    lifecycle log lines: received, formatted, and the terminal outcome.
    """

    def __init__(self, session: AgentSession, *, screenshots: ScreenshotStore | None = None) -> None:
        self.session = session
        self.screenshots = screenshots

    def handle(self, instruction: Instruction) -> str:
        req_id = instruction.request_id
        selection = instruction.selection
        logger.info(
            "bridge_message id=%s area=%s instruction=%r",
            req_id,
            selection.summary(),
            instruction.text,
        )
        if instruction.screenshot:
            self._note_screenshot(instruction)

        try:
            text = format_instruction(instruction)
        except Exception as exc:  # noqa: BLE001
            logger.exception("bridge_format_failed id=%s", req_id)
            raise InstructionError(req_id, "format", f"could not format instruction: {exc}") from exc
        logger.info("bridge_formatted id=%s text=%s", req_id, text)

        started = time.time()
        try:
            self.session.submit(text)
        except AgentError as exc:
            logger.error("bridge_failed id=%s stage=%s error=%s", req_id, exc.stage, exc)
            raise InstructionError(req_id, exc.stage, f"failed to send message to agent: {exc}") from exc
        logger.info("bridge_complete id=%s elapsed=%.1fs", req_id, time.time() - started)
        return text

    def _note_screenshot(self, instruction: Instruction) -> None:
        req_id = instruction.request_id
        try:
            shot = decode_screenshot(instruction.screenshot or "")
        except ScreenshotError as exc:
            logger.warning("bridge_screenshot_invalid id=%s error=%s", req_id, exc)
            return
        logger.info("bridge_screenshot id=%s %s", req_id, shot.describe())
        if self.screenshots is None:
            return
        try:
            self.screenshots.save(req_id, shot)
        except OSError as exc:
            logger.warning("bridge_screenshot_save_failed id=%s error=%s", req_id, exc)
