"""Git worktree isolation for parallel sessions.

Each session gets its own worktree under
``<base_dir>/<repository name>/<session id>`` so workers can sit on
different branches of the same repository at once.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30.0


class WorkspaceError(RuntimeError):
    """Raised when a git worktree operation fails."""


@dataclass(slots=True)
class WorkspaceInfo:
    path: Path
    branch: str
    commit: str
    session_id: str | None
    is_primary: bool


async def _run_git(args: list[str], cwd: Path, timeout: float = GIT_TIMEOUT) -> tuple[str, str, int]:
    """Run a git command and return (stdout, stderr, returncode)."""

    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except OSError as exc:
        raise WorkspaceError(f"Unable to run git: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return "", f"git {args[0]} timed out after {timeout}s", -1
    return (
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
        proc.returncode or 0,
    )


class WorktreeManager:
    """Creates, lists and reconciles the worktrees Orcha owns for one repository."""

    def __init__(self, repo_path: Path, *, base_dir: Path) -> None:
        self._repo_path = Path(repo_path).expanduser().resolve()
        self._base_dir = Path(base_dir).expanduser().resolve()

    @property
    def repo_path(self) -> Path:
        return self._repo_path

    @property
    def repo_worktree_dir(self) -> Path:
        return self._base_dir / self._repo_path.name

    def worktree_path(self, session_id: str) -> Path:
        return self.repo_worktree_dir / session_id

    async def _git(self, *args: str) -> str:
        stdout, stderr, rc = await _run_git(list(args), self._repo_path)
        if rc != 0:
            raise WorkspaceError(f"git {' '.join(args)} failed: {stderr or stdout}")
        return stdout

    async def branch_exists(self, branch: str) -> bool:
        for ref in (f"refs/heads/{branch}", f"refs/remotes/origin/{branch}"):
            _, _, rc = await _run_git(["show-ref", "--verify", "--quiet", ref], self._repo_path)
            if rc == 0:
                return True
        return False

    async def create(self, session_id: str, branch: str) -> Path:
        """Create a worktree for ``session_id`` on ``branch``, creating the branch from HEAD if needed."""

        path = self.worktree_path(session_id)
        self.repo_worktree_dir.mkdir(parents=True, exist_ok=True)
        if path.exists():
            raise WorkspaceError(f"Worktree already exists at {path}")

        if await self.branch_exists(branch):
            await self._git("worktree", "add", str(path), branch)
        else:
            await self._git("worktree", "add", "-b", branch, str(path))

        logger.info(
            "Created worktree",
            extra={"session_id": session_id, "branch": branch, "path": str(path)},
        )
        return path

    async def remove(self, session_id: str) -> None:
        path = self.worktree_path(session_id)
        if not path.exists():
            return
        await self._git("worktree", "remove", str(path), "--force")
        logger.info("Removed worktree", extra={"session_id": session_id, "path": str(path)})

    async def list(self) -> list[WorkspaceInfo]:
        output = await self._git("worktree", "list", "--porcelain")
        managed_root = self.repo_worktree_dir

        worktrees: list[WorkspaceInfo] = []
        for block in output.split("\n\n"):
            path_text = commit = branch = ""
            for line in block.splitlines():
                if line.startswith("worktree "):
                    path_text = line[len("worktree "):]
                elif line.startswith("HEAD "):
                    commit = line[len("HEAD "):]
                elif line.startswith("branch "):
                    branch = line[len("branch "):].removeprefix("refs/heads/")
            if not path_text:
                continue

            path = Path(path_text)
            managed = path.parent == managed_root
            worktrees.append(
                WorkspaceInfo(
                    path=path,
                    branch=branch,
                    commit=commit,
                    session_id=path.name if managed else None,
                    is_primary=path == self._repo_path,
                )
            )
        return worktrees

    async def list_managed(self) -> list[WorkspaceInfo]:
        return [info for info in await self.list() if info.session_id is not None]

    async def get_info(self, session_id: str) -> WorkspaceInfo | None:
        path = self.worktree_path(session_id)
        return next((info for info in await self.list() if info.path == path), None)

    def exists(self, session_id: str) -> bool:
        return self.worktree_path(session_id).exists()

    async def prune(self) -> None:
        await self._git("worktree", "prune")

    async def cleanup(self, active_session_ids: set[str] | list[str] = ()) -> list[str]:
        """Remove managed worktree directories that belong to no active session."""

        root = self.repo_worktree_dir
        if not root.is_dir():
            return []

        active = set(active_session_ids)
        removed: list[str] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or entry.name in active:
                continue
            try:
                await self.remove(entry.name)
            except WorkspaceError as exc:
                logger.warning(
                    "git refused to remove worktree, deleting directory",
                    extra={"session_id": entry.name, "error": str(exc)},
                )
                shutil.rmtree(entry, ignore_errors=True)
                await self.prune()
            removed.append(entry.name)

        if removed:
            logger.info("Cleaned up orphaned worktrees", extra={"session_ids": removed})
        return removed


__all__ = ["WorkspaceError", "WorkspaceInfo", "WorktreeManager"]
