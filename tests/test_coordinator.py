from __future__ import annotations

import base64
import logging
from io import BytesIO

import pytest
from PIL import Image

from layrr.bridge.agent_session import AgentSession
from layrr.bridge.coordinator import BridgeCoordinator
from layrr.bridge.errors import AgentBusyError, AgentTaskError, InstructionError
from layrr.bridge.screenshot import ScreenshotStore
from layrr.bridge.selection import Instruction


class _RecordingRunner:
    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc
        self.texts: list[str] = []

    def run(self, text: str) -> None:
        self.texts.append(text)
        if self.exc is not None:
            raise self.exc

    def cancel(self) -> None:
        pass


def _png_b64(size: tuple[int, int] = (4, 3)) -> str:
    buf = BytesIO()
    Image.new("RGB", size, (200, 40, 40)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _instruction(**extra) -> Instruction:  # noqa: ANN003
    msg = {
        "id": 42,
        "instruction": "make the button purple",
        "area": {"x": 0, "y": 0, "width": 200, "height": 80, "elementCount": 1},
        "elements": [{"tagName": "button", "selector": "button.buy", "innerText": "Buy"}],
        **extra,
    }
    return Instruction.from_message(msg)


def test_handle_submits_formatted_text(caplog: pytest.LogCaptureFixture) -> None:
    runner = _RecordingRunner()
    coordinator = BridgeCoordinator(AgentSession(runner))

    with caplog.at_level(logging.INFO, logger="layrr.bridge"):
        text = coordinator.handle(_instruction())

    assert runner.texts == [text]
    assert text == 'make the button purple (Selected 1 elements in 200x80 area: [button.buy text:"Buy"] )'
    messages = [r.getMessage() for r in caplog.records if r.name == "layrr.bridge"]
    assert any(m.startswith("bridge_message id=42") for m in messages)
    assert any(m.startswith("bridge_formatted id=42") for m in messages)
    assert any(m.startswith("bridge_complete id=42") for m in messages)


def test_agent_failure_becomes_instruction_error() -> None:
    coordinator = BridgeCoordinator(AgentSession(_RecordingRunner(AgentTaskError("build broke")), name="claude"))

    with pytest.raises(InstructionError) as exc_info:
        coordinator.handle(_instruction())

    err = exc_info.value
    assert err.request_id == 42
    assert err.stage == "agent.task"
    assert err.reason.startswith("failed to send message to agent:")
    assert "build broke" in err.reason
    assert isinstance(err.__cause__, AgentTaskError)
    assert err.to_dict() == {"id": 42, "status": "error", "stage": "agent.task", "error": err.reason}


def test_busy_agent_surfaces_busy_stage() -> None:
    runner = _RecordingRunner(AgentBusyError("agent is busy (1 instruction(s) ahead); retry later"))
    coordinator = BridgeCoordinator(AgentSession(runner))

    with pytest.raises(InstructionError) as exc_info:
        coordinator.handle(_instruction())

    assert exc_info.value.stage == "agent.busy"


def test_screenshot_is_saved_when_store_configured(tmp_path) -> None:  # noqa: ANN001
    runner = _RecordingRunner()
    coordinator = BridgeCoordinator(AgentSession(runner), screenshots=ScreenshotStore(tmp_path / "shots"))

    coordinator.handle(_instruction(screenshot="data:image/png;base64," + _png_b64()))

    saved = tmp_path / "shots" / "selection-42.png"
    assert saved.exists()
    with Image.open(saved) as img:
        assert img.size == (4, 3)
    # The screenshot is not part of the agent text.
    assert "base64" not in runner.texts[0]


def test_bad_screenshot_only_warns(caplog: pytest.LogCaptureFixture) -> None:
    runner = _RecordingRunner()
    coordinator = BridgeCoordinator(AgentSession(runner))

    with caplog.at_level(logging.WARNING, logger="layrr.bridge"):
        coordinator.handle(_instruction(screenshot="bm90IGFuIGltYWdl"))

    assert len(runner.texts) == 1
    assert any("bridge_screenshot_invalid id=42" in r.getMessage() for r in caplog.records)
