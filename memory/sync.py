"""
STORE SYNC - Keeps the local state directory in step with its remote

The state directory is a git working tree shared with the workers and other
machines. Sync is best effort: a failed pull or push is logged and the tick
carries on with whatever is on disk.
"""

import subprocess
from pathlib import Path
from typing import List, Protocol

from loguru import logger

from core.retry import Backoff, RetryError, call_with_backoff


GIT_BACKOFF = Backoff(
    retries=2,
    base_delay=2.0,
    max_delay=10.0,
    retry_on=(subprocess.SubprocessError, OSError),
)


class StoreSync(Protocol):
    def pull(self) -> bool: ...

    def push(self) -> bool: ...


class NullSync:
    """Sync for a purely local state directory."""

    def pull(self) -> bool:
        return True

    def push(self) -> bool:
        return True


class GitSync:
    """
    Pull/push the state directory with git.

    push() only commits when the working tree is dirty.
    """

    def __init__(
        self,
        repo_dir: str,
        remote: str = "origin",
        branch: str = "main",
        commit_message: str = "Auto-commit: daemon task execution",
        backoff: Backoff = GIT_BACKOFF,
        timeout: float = 60.0,
    ):
        self.repo_dir = Path(repo_dir)
        self.remote = remote
        self.branch = branch
        self.commit_message = commit_message
        self.backoff = backoff
        self.timeout = timeout

    def _git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=str(self.repo_dir),
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=True,
        )
        return result.stdout

    def pull(self) -> bool:
        try:
            call_with_backoff(
                self._git, "pull", "--rebase", self.remote, self.branch,
                backoff=self.backoff,
            )
            logger.debug("Pulled latest state")
            return True
        except RetryError as e:
            logger.warning(f"Git pull failed: {e.last_exception}")
            return False

    def push(self) -> bool:
        try:
            status = self._git("status", "--porcelain")
            if not status.strip():
                return True
            self._git("add", "-A")
            self._git("commit", "-m", self.commit_message)
            call_with_backoff(
                self._git, "push", self.remote, self.branch,
                backoff=self.backoff,
            )
            logger.info(f"Pushed {len(changed_paths(status))} changed state files")
            return True
        except (subprocess.SubprocessError, OSError) as e:
            logger.warning(f"Git commit failed: {e}")
            return False
        except RetryError as e:
            logger.warning(f"Git push failed: {e.last_exception}")
            return False


def changed_paths(status_output: str) -> List[str]:
    """Paths listed by `git status --porcelain`."""
    return [line[3:] for line in status_output.splitlines() if len(line) > 3]
