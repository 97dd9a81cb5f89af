from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from layrr.bridge.agent_session import AgentSession
from layrr.bridge.coordinator import BridgeCoordinator
from layrr.bridge.gateway import WS_MESSAGE_PATH, BridgeServer
from layrr.bridge.main import EXIT_ERROR, EXIT_NO_REPOSITORY, EXIT_NOTHING_TO_CHECKPOINT, EXIT_OK, main

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    monkeypatch.delenv("LAYRR_TIMELINE_BRANCH", raising=False)
    path = tmp_path / "site"
    path.mkdir()
    subprocess.run(["git", "init", "--quiet"], cwd=path, check=True)
    return path


@needs_git
def test_checkpoint_create_list_and_travel(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (project / "index.html").write_text("v1\n")
    assert main(["--project", str(project), "checkpoint", "create", "first"]) == EXIT_OK
    first = json.loads(capsys.readouterr().out)
    assert first["message"] == "first"

    (project / "index.html").write_text("v2\n")
    assert main(["--project", str(project), "checkpoint", "create", "second"]) == EXIT_OK
    capsys.readouterr()

    assert main(["--project", str(project), "checkpoint", "travel", first["shortHash"]]) == EXIT_OK
    capsys.readouterr()
    assert (project / "index.html").read_text() == "v1\n"

    assert main(["--project", str(project), "checkpoint", "list"]) == EXIT_OK
    listed = json.loads(capsys.readouterr().out)
    assert [e["message"] for e in listed] == ["second", "first"]
    assert listed[1].get("current") is True
    assert "current" not in listed[0]

    assert main(["--project", str(project), "checkpoint", "status"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["state"] == "onHistoricalCheckpoint"


@needs_git
def test_checkpoint_exit_codes(project: Path, tmp_path: Path) -> None:
    assert main(["--project", str(project), "checkpoint", "create", "empty"]) == EXIT_NOTHING_TO_CHECKPOINT
    assert main(["--project", str(project), "checkpoint", "travel", "nope"]) == EXIT_ERROR

    plain = tmp_path / "plain"
    plain.mkdir()
    assert main(["--project", str(plain), "checkpoint", "status"]) == EXIT_NO_REPOSITORY


class _OkRunner:
    def run(self, text: str) -> None:
        pass

    def cancel(self) -> None:
        pass


def test_send_round_trip(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    server = BridgeServer(BridgeCoordinator(AgentSession(_OkRunner())), port=0)
    server.start()
    selection = tmp_path / "selection.json"
    selection.write_text(json.dumps({"area": {"width": 10, "height": 10}, "elements": [{"selector": "h1"}]}))
    url = f"ws://127.0.0.1:{server.port}{WS_MESSAGE_PATH}"
    try:
        code = main(["send", "bigger heading", "--selection", str(selection), "--url", url, "--timeout", "5"])
    finally:
        server.stop()

    assert code == EXIT_OK
    reply = json.loads(capsys.readouterr().out)
    assert reply["status"] == "complete"


def test_send_without_bridge_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LAYRR_RECONNECT_MAX_ATTEMPTS", "0")
    code = main(["send", "x", "--url", "ws://127.0.0.1:9/__layrr/ws/message", "--connect-timeout", "0.5"])
    assert code == EXIT_ERROR
