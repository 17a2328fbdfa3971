"""Per-job scratch directories and repository clones."""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from pulse_engine.services.process import ProcessError, ProcessRunner, ProcessTimeout

logger = logging.getLogger(__name__)

# Generated or vendored content that is never worth scanning
SKIP_DIRS = frozenset({
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    "coverage",
    "__pycache__",
    ".venv",
    "venv",
    "target",
    ".tox",
})


class WorkspaceError(OSError):
    """Scratch directory could not be created."""


class CloneError(Exception):
    """Repository clone failed."""

    AUTH = "auth"
    NOT_FOUND = "not-found"
    TIMEOUT = "timeout"
    FAILED = "failed"

    def __init__(self, message: str, reason: str = FAILED):
        super().__init__(message)
        self.reason = reason


def classify_clone_failure(error: ProcessError) -> CloneError:
    """Turn a failed git clone into a CloneError with a readable reason."""
    if isinstance(error, ProcessTimeout):
        return CloneError("Clone timed out", CloneError.TIMEOUT)

    stderr = error.stderr or ""
    lowered = stderr.lower()
    if "403" in stderr or "authentication failed" in lowered or "could not read username" in lowered:
        return CloneError(
            "Clone failed: access denied (check repository permissions or token)",
            CloneError.AUTH,
        )
    if "404" in stderr or "not found" in lowered:
        return CloneError("Clone failed: repository not found", CloneError.NOT_FOUND)

    detail = stderr.strip().splitlines()[-1] if stderr.strip() else str(error)
    return CloneError(f"Clone failed: {detail}", CloneError.FAILED)


def walk_files(root: Path, skip_dirs=SKIP_DIRS) -> List[Path]:
    """Recursively list files under root, pruning generated directories.

    Unreadable directories are skipped.
    """
    files: List[Path] = []

    def on_error(error: OSError) -> None:
        logger.warning("Skipping %s: %s", error.filename, error.strerror)

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = [d for d in dirnames if d not in skip_dirs]
        for name in filenames:
            files.append(Path(dirpath) / name)

    return files


class WorkspaceManager:
    """Allocates, fills and removes one scratch directory per job."""

    def __init__(
        self,
        root: Path,
        runner: ProcessRunner,
        git_path: str = "git",
        clone_timeout: int = 300,
    ):
        self.root = Path(root)
        self.runner = runner
        self.git_path = git_path
        self.clone_timeout = clone_timeout

    def path_for(self, job_id: str) -> Path:
        return self.root / job_id

    async def allocate(self, job_id: str) -> Path:
        """Create a fresh, empty directory for a job."""
        path = self.path_for(job_id)

        def _create():
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)

        try:
            await asyncio.to_thread(_create)
        except OSError as e:
            logger.error("Failed to create workspace %s: %s", path, e)
            raise WorkspaceError(f"Failed to create workspace: {e}") from e

        logger.info("Allocated workspace %s", path)
        return path

    async def clone_into(self, path: Path, repo_url: str) -> None:
        """Shallow single-branch clone of repo_url into path."""
        try:
            await self.runner.run(
                self.git_path,
                ["clone", "--depth", "1", "--single-branch", repo_url, str(path)],
                timeout=self.clone_timeout,
            )
        except ProcessError as e:
            error = classify_clone_failure(e)
            logger.error("Clone of %s failed (%s): %s", repo_url, error.reason, e)
            raise error from e

        logger.info("Cloned %s into %s", repo_url, path)

    async def release(self, path: Optional[Path]) -> None:
        """Remove a workspace. Never raises."""
        if path is None or not Path(path).exists():
            return

        def _on_error(func: Callable, failed_path: str, exc_info) -> None:
            logger.warning("Could not remove %s: %s", failed_path, exc_info[1])

        try:
            await asyncio.to_thread(shutil.rmtree, path, onerror=_on_error)
            logger.info("Cleaned up workspace %s", path)
        except FileNotFoundError:
            pass
        except Exception as e:
            logger.warning("Workspace cleanup warning for %s: %s", path, e)

    async def purge_orphans(self) -> int:
        """Remove every leftover workspace under the root; returns the count."""
        if not self.root.exists():
            return 0

        entries = await asyncio.to_thread(lambda: [p for p in self.root.iterdir() if p.is_dir()])
        for entry in entries:
            await self.release(entry)

        if entries:
            logger.info("Purged %d orphaned workspace(s)", len(entries))
        return len(entries)

    async def list_files(self, path: Path) -> List[Path]:
        return await asyncio.to_thread(walk_files, path)
