from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("layrr.bridge.timeline.git")


class GitUnavailableError(RuntimeError):
    pass


@dataclass
class GitResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def message(self) -> str:
        text = (self.stderr or self.stdout or "").strip()
        return text or f"git {' '.join(self.args)} exited with status {self.returncode}"


class GitRunner:
    """Thin wrapper around the git CLI bound to one project directory."""

    def __init__(self, project_dir: str | Path, *, timeout: float = 60.0) -> None:
        self.project_dir = Path(project_dir)
        self.timeout = timeout

    def run(self, *args: str, env: dict[str, str] | None = None) -> GitResult:
        cmd = ["git", *args]
        full_env = dict(os.environ)
        full_env["GIT_TERMINAL_PROMPT"] = "0"
        full_env["LC_ALL"] = "C"
        if env:
            full_env.update(env)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.project_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=full_env,
            )
        except FileNotFoundError as exc:
            raise GitUnavailableError("git executable not found") from exc
        except NotADirectoryError as exc:
            raise GitUnavailableError(f"project directory does not exist: {self.project_dir}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GitUnavailableError(f"git {' '.join(args)} timed out after {self.timeout}s") from exc
        result = GitResult(list(args), proc.returncode, proc.stdout, proc.stderr)
        if not result.ok:
            logger.debug("git_failed args=%s rc=%s stderr=%s", args, proc.returncode, proc.stderr.strip())
        return result

    def output(self, *args: str) -> str | None:
        """Stripped stdout on success, None on a non-zero exit."""
        result = self.run(*args)
        if not result.ok:
            return None
        return result.stdout.strip()
