"""Checkpoint timeline on top of git.

Every accepted change becomes a commit ("checkpoint") on one distinguished
branch, the timeline branch. Time-travel moves that branch (and the working
tree) to an older checkpoint with ``reset --hard``; later checkpoints stay
reachable through keep-alive refs under ``refs/layrr/checkpoints/`` so the
history list never loses them and travelling forward again is always possible.

Note: travelling discards uncommitted edits to tracked files. That is the
expected behaviour of "switch to this version", not a bug. Untracked files are
left in place.
"""

from __future__ import annotations

import contextlib
import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..config import DEFAULT_AUTHOR_EMAIL, DEFAULT_AUTHOR_NAME, DEFAULT_TIMELINE_BRANCH
from ..errors import (
    BranchRepairError,
    CheckpointError,
    CheckpointLockedError,
    InvalidCheckpointError,
    MergeConflictError,
    NoRepositoryError,
    NothingToCheckpointError,
)
from .git import GitRunner, GitUnavailableError
from .lock import LOCK_FILE_NAME, ProjectLock

logger = logging.getLogger("layrr.bridge.timeline")

KEEPALIVE_REF_PREFIX = "refs/layrr/checkpoints"

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
# full id, short id, author, author date, committer date, subject
_LOG_FORMAT = "%H%x1f%h%x1f%an%x1f%aI%x1f%cI%x1f%s%x1e"


class TimelineState(str, enum.Enum):
    ON_TIMELINE_HEAD = "onTimelineHead"
    ON_HISTORICAL_CHECKPOINT = "onHistoricalCheckpoint"
    DETACHED = "detached"


@dataclass(frozen=True)
class Checkpoint:
    full_id: str
    short_id: str
    message: str
    author: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.full_id,
            "shortHash": self.short_id,
            "author": self.author,
            "date": self.timestamp,
            "message": self.message,
        }


@dataclass(frozen=True)
class TimelineStatus:
    state: TimelineState
    branch: str | None
    head: str | None
    latest: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "branch": self.branch,
            "head": self.head,
            "latest": self.latest,
        }


class CheckpointManager:
    def __init__(
        self,
        project_dir: str | Path,
        *,
        timeline_branch: str = DEFAULT_TIMELINE_BRANCH,
        author_name: str = DEFAULT_AUTHOR_NAME,
        author_email: str = DEFAULT_AUTHOR_EMAIL,
        lock_timeout: float = 10.0,
        git: GitRunner | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.timeline_branch = timeline_branch
        self.author_name = author_name
        self.author_email = author_email
        self.lock_timeout = lock_timeout
        self.git = git or GitRunner(self.project_dir)
        self._lock: ProjectLock | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def ensure_timeline_branch(self) -> None:
        with self._exclusive():
            self._ensure_timeline_branch()

    def create_checkpoint(self, message: str) -> Checkpoint:
        message = (message or "").strip()
        if not message:
            raise ValueError("checkpoint message is required")

        with self._exclusive():
            self._ensure_timeline_branch()
            before = self._head()

            added = self.git.run("add", "-A")
            if not added.ok:
                raise CheckpointError(f"failed to stage changes: {added.message()}")

            if self.git.run("diff", "--cached", "--quiet").ok:
                raise NothingToCheckpointError("nothing to checkpoint: working tree has no changes")

            committed = self.git.run("commit", "-m", message, env=self._identity_env())
            if not committed.ok:
                self._unstage(before)
                raise CheckpointError(f"failed to create checkpoint: {committed.message()}")

            after = self._head()
            branch = self._current_branch()
            if after is None or after == before or branch != self.timeline_branch:
                raise CheckpointError(
                    f"checkpoint post-condition failed: head={after} before={before} branch={branch}"
                )
            self._keep_alive(after)

            checkpoint = self._read_checkpoint(after)
            logger.info("checkpoint_created id=%s message=%r", checkpoint.short_id, checkpoint.message)
            return checkpoint

    def list_checkpoints(self, limit: int = 50) -> list[Checkpoint]:
        if int(limit) <= 0:
            return []
        with self._exclusive():
            if self._head() is None:
                return []
            result = self.git.run(
                "log",
                "--exclude=refs/stash",
                "--all",
                "--date-order",
                f"--max-count={int(limit)}",
                f"--pretty=format:{_LOG_FORMAT}",
            )
            if not result.ok:
                raise CheckpointError(f"failed to read checkpoint history: {result.message()}")

        entries = list(_parse_log(result.stdout))
        # Stable sort keeps git's topological order for equal timestamps.
        entries.sort(key=lambda e: e[0], reverse=True)
        return [cp for _, cp in entries]

    def current_checkpoint(self) -> str | None:
        with self._exclusive():
            return self._head()

    def travel_to(self, checkpoint_id: str) -> Checkpoint:
        ref = (checkpoint_id or "").strip()
        if not ref:
            raise InvalidCheckpointError("checkpoint id is required")

        with self._exclusive():
            target = self.git.output("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
            if not target:
                raise InvalidCheckpointError(f"unknown checkpoint: {ref}")

            self._ensure_timeline_branch()
            head = self._head()
            if head is not None:
                self._keep_alive(head)

            reset = self.git.run("reset", "--hard", target)
            if not reset.ok:
                self._restore(head)
                raise CheckpointError(f"failed to switch to checkpoint {ref}: {reset.message()}")

            after = self._head()
            branch = self._current_branch()
            if after != target or branch != self.timeline_branch:
                self._restore(head)
                raise CheckpointError(f"time-travel post-condition failed: head={after} branch={branch}")

            checkpoint = self._read_checkpoint(target)
            logger.info("checkpoint_travel from=%s to=%s", (head or "")[:7], checkpoint.short_id)
            return checkpoint

    def status(self) -> TimelineStatus:
        with self._exclusive():
            branch = self._current_branch()
            head = self._head()
            latest = self._latest()
        if branch != self.timeline_branch:
            state = TimelineState.DETACHED
        elif head is None or head == latest:
            state = TimelineState.ON_TIMELINE_HEAD
        else:
            state = TimelineState.ON_HISTORICAL_CHECKPOINT
        return TimelineStatus(state=state, branch=branch, head=head, latest=latest)

    # ─────────────────────────────────────────────────────────────────────────
    # Timeline invariant
    # ─────────────────────────────────────────────────────────────────────────

    def _ensure_timeline_branch(self) -> None:
        previous = self._current_branch()
        if previous == self.timeline_branch:
            return

        head = self._head()
        exists = self.git.run("show-ref", "--verify", "--quiet", f"refs/heads/{self.timeline_branch}").ok
        logger.info(
            "timeline_repair from=%s head=%s branch_exists=%s",
            previous or "(detached)",
            (head or "")[:7],
            exists,
        )

        if head is None and not exists:
            # Unborn repository: just point HEAD at the timeline branch.
            switched = self.git.run("symbolic-ref", "HEAD", f"refs/heads/{self.timeline_branch}")
            if not switched.ok:
                raise BranchRepairError(f"failed to switch to {self.timeline_branch}: {switched.message()}")
            return

        if previous is None and head is not None:
            # Leaving a detached position; keep it reachable.
            self._keep_alive(head)

        if not exists:
            created = self.git.run("branch", self.timeline_branch)
            if not created.ok:
                raise BranchRepairError(f"failed to create {self.timeline_branch}: {created.message()}")

        switched = self.git.run("checkout", self.timeline_branch)
        if not switched.ok:
            raise BranchRepairError(f"failed to switch to {self.timeline_branch}: {switched.message()}")

        if previous and head is not None:
            self._integrate(previous)

        if self._current_branch() != self.timeline_branch:
            raise BranchRepairError(f"still not on {self.timeline_branch} after repair")

    def _integrate(self, branch: str) -> None:
        ff = self.git.run("merge", "--ff-only", branch)
        if ff.ok:
            return
        merged = self.git.run("merge", "--no-edit", branch, env=self._identity_env())
        if merged.ok:
            logger.info("timeline_merged branch=%s", branch)
            return
        with contextlib.suppress(GitUnavailableError):
            self.git.run("merge", "--abort")
        raise MergeConflictError(
            f"could not integrate {branch} into {self.timeline_branch}: "
            f"fast-forward failed ({ff.message()}); merge failed ({merged.message()})"
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        lock = self._project_lock()
        if not lock.acquire(timeout=self.lock_timeout):
            raise CheckpointLockedError("another checkpoint operation is in progress for this project")
        try:
            yield
        except GitUnavailableError as exc:
            raise CheckpointError(str(exc)) from exc
        finally:
            lock.release()

    def _project_lock(self) -> ProjectLock:
        if self._lock is not None:
            return self._lock
        try:
            git_dir = self.git.output("rev-parse", "--absolute-git-dir")
        except GitUnavailableError as exc:
            raise NoRepositoryError(f"no git repository at {self.project_dir}: {exc}") from exc
        if not git_dir:
            raise NoRepositoryError(f"no git repository at {self.project_dir}")
        # git walks up to parent directories; the project must be the work tree root.
        toplevel = self.git.output("rev-parse", "--show-toplevel")
        if not toplevel or Path(toplevel).resolve() != self.project_dir.resolve():
            raise NoRepositoryError(
                f"no git repository at {self.project_dir} (enclosing work tree: {toplevel or 'none'})"
            )
        self._lock = ProjectLock(path=Path(git_dir) / LOCK_FILE_NAME)
        return self._lock

    def _identity_env(self) -> dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.author_name,
            "GIT_AUTHOR_EMAIL": self.author_email,
            "GIT_COMMITTER_NAME": self.author_name,
            "GIT_COMMITTER_EMAIL": self.author_email,
        }

    def _current_branch(self) -> str | None:
        return self.git.output("symbolic-ref", "--quiet", "--short", "HEAD") or None

    def _head(self) -> str | None:
        return self.git.output("rev-parse", "--verify", "--quiet", "HEAD") or None

    def _latest(self) -> str | None:
        return (
            self.git.output(
                "rev-list",
                "--max-count=1",
                "--date-order",
                f"--glob={KEEPALIVE_REF_PREFIX}",
                f"refs/heads/{self.timeline_branch}",
                "--",
            )
            or None
        )

    def _keep_alive(self, sha: str) -> None:
        result = self.git.run("update-ref", f"{KEEPALIVE_REF_PREFIX}/{sha}", sha)
        if not result.ok:
            raise CheckpointError(f"failed to record checkpoint {sha[:7]}: {result.message()}")

    def _unstage(self, head: str | None) -> None:
        with contextlib.suppress(GitUnavailableError):
            if head is None:
                self.git.run("rm", "-r", "--cached", "--quiet", "--ignore-unmatch", ".")
            else:
                self.git.run("reset", "--quiet", head)

    def _restore(self, head: str | None) -> None:
        if head is None:
            return
        with contextlib.suppress(GitUnavailableError):
            self.git.run("reset", "--hard", head)

    def _read_checkpoint(self, sha: str) -> Checkpoint:
        result = self.git.run("show", "-s", f"--pretty=format:{_LOG_FORMAT}", sha)
        entries = list(_parse_log(result.stdout)) if result.ok else []
        if not entries:
            raise CheckpointError(f"failed to read checkpoint {sha[:7]}")
        return entries[0][1]


def _parse_log(output: str) -> Iterator[tuple[datetime, Checkpoint]]:
    for record in (output or "").split(_RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        parts = record.split(_FIELD_SEP)
        if len(parts) != 6:
            logger.debug("checkpoint_log_skip malformed=%r", record[:200])
            continue
        full_id, short_id, author, author_date, commit_date, subject = parts
        try:
            committed_at = datetime.fromisoformat(commit_date.strip().replace("Z", "+00:00"))
            datetime.fromisoformat(author_date.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("checkpoint_log_skip bad_date=%r", record[:200])
            continue
        if not full_id.strip():
            continue
        yield committed_at, Checkpoint(
            full_id=full_id.strip(),
            short_id=short_id.strip(),
            message=subject,
            author=author,
            timestamp=author_date.strip(),
        )
