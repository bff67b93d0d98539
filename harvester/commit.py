"""Hand produced artifacts to version control."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

LOGGER = logging.getLogger(__name__)


class ArtifactCommitter(Protocol):
    def commit(self, paths: Sequence[Path], extra: Sequence[Path] = ()) -> bool:  # pragma: no cover - interface only
        ...


class GitCommitter:
    """Stage and commit paths inside a git work tree."""

    def __init__(
        self,
        repo_root: Path,
        *,
        message: str = "Add {count} artifact(s) through {last}",
        git_binary: str = "git",
        timeout: float = 120.0,
    ) -> None:
        self._repo_root = repo_root
        self._message = message
        self._git = git_binary
        self._timeout = timeout

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self._git, *args],
            cwd=self._repo_root,
            check=True,
            capture_output=True,
            text=True,
            timeout=self._timeout,
        )

    def commit(self, paths: Sequence[Path], extra: Sequence[Path] = ()) -> bool:
        """Commit ``paths`` plus any ``extra`` bookkeeping files, naming only ``paths``."""

        if not paths:
            return True

        message = self._message.format(count=len(paths), last=Path(paths[-1]).name)
        relative = [self._relative(path) for path in [*paths, *extra]]
        try:
            self._run("add", "--", *relative)
            staged = self._run("diff", "--cached", "--name-only")
            if not staged.stdout.strip():
                LOGGER.info("Nothing new to commit for %d path(s)", len(relative))
                return True
            self._run("commit", "-m", message)
        except subprocess.CalledProcessError as exc:
            LOGGER.error("git %s failed: %s", exc.cmd[1] if len(exc.cmd) > 1 else "", (exc.stderr or "").strip())
            return False
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.error("git commit unavailable: %s", exc)
            return False

        LOGGER.info("Committed %d path(s): %s", len(relative), message)
        return True

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self._repo_root.resolve()).as_posix()
        except ValueError:
            return str(path)
