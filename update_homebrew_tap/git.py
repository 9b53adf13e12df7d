"""
Git operations for committing formula updates. Uses the git CLI.
"""

import logging
import subprocess
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class GitError(Exception):
    def __init__(self, args: List[str], returncode: int, output: str):
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {output}")
        self.args_list = args
        self.returncode = returncode
        self.output = output


class GitRepository:
    def __init__(self, root: Path, timeout: float = 60.0):
        self.root = Path(root)
        self.timeout = timeout

    def _git(self, args: List[str]) -> str:
        logger.debug("git %s", " ".join(args))
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise GitError(args, -1, str(exc)) from exc
        if result.returncode != 0:
            raise GitError(args, result.returncode, (result.stderr or result.stdout).strip())
        return result.stdout

    def relative(self, path: Path) -> str:
        path = Path(path).resolve()
        try:
            return str(path.relative_to(self.root.resolve()))
        except ValueError:
            return str(path)

    def has_changes(self, path: Path) -> bool:
        return bool(self._git(["status", "--porcelain", "--", self.relative(path)]).strip())

    def add(self, path: Path) -> None:
        self._git(["add", "--", self.relative(path)])

    def commit(self, message: str, path: Path) -> str:
        """Commit only ``path``, whatever else is staged, and return the new HEAD."""
        self._git(["commit", "-m", message, "--", self.relative(path)])
        return self._git(["rev-parse", "HEAD"]).strip()

    def push(self, remote: str, branch: str) -> None:
        self._git(["push", remote, f"HEAD:{branch}"])
