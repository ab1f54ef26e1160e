"""Async wrapper around the git command line."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from rover.errors import WorktreeError

logger = logging.getLogger(__name__)


class Git:
    """Runs git commands against one repository."""

    def __init__(self, repo_root: Path, timeout: float = 120.0):
        self.repo_root = repo_root
        self.timeout = timeout

    async def _run_git(
        self,
        args: list[str],
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> tuple[int, str, str]:
        """Run a git command.

        Args:
            args: Arguments after `git`
            cwd: Working directory, defaults to the repository root
            check: Raise WorktreeError on a non-zero exit code

        Returns:
            Tuple of (returncode, stdout, stderr)
        """
        cmd = ["git", *args]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd or self.repo_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WorktreeError(f"Failed to run git: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise WorktreeError(f"git {args[0]} timed out after {self.timeout}s") from e

        out = stdout.decode().strip()
        err = stderr.decode().strip()

        if check and proc.returncode != 0:
            raise WorktreeError(f"git {' '.join(args)} failed: {err or out}")

        return proc.returncode, out, err

    async def is_git_repo(self) -> bool:
        try:
            code, out, _ = await self._run_git(
                ["rev-parse", "--is-inside-work-tree"], check=False
            )
        except WorktreeError:
            return False
        return code == 0 and out == "true"

    async def has_commits(self) -> bool:
        code, _, _ = await self._run_git(["rev-list", "--count", "HEAD"], check=False)
        return code == 0

    async def current_branch(self, cwd: Optional[Path] = None) -> str:
        _, out, _ = await self._run_git(["branch", "--show-current"], cwd=cwd)
        return out

    async def branch_exists(self, branch: str) -> bool:
        code, _, _ = await self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return code == 0

    async def create_worktree(
        self,
        path: Path,
        branch: str,
        base: Optional[str] = None,
    ) -> None:
        """Create a worktree at `path` on `branch`.

        An existing branch is checked out; otherwise it is created from
        `base` (or HEAD).
        """
        if await self.branch_exists(branch):
            await self._run_git(["worktree", "add", str(path), branch])
        else:
            args = ["worktree", "add", str(path), "-b", branch]
            if base:
                args.append(base)
            await self._run_git(args)

    async def remove_worktree(self, path: Path) -> None:
        await self._run_git(["worktree", "remove", str(path), "--force"])

    async def prune_worktrees(self) -> None:
        await self._run_git(["worktree", "prune"])

    async def delete_branch(self, branch: str) -> None:
        await self._run_git(["branch", "-D", branch])

    async def diff(
        self,
        cwd: Optional[Path] = None,
        base: Optional[str] = None,
        file_path: Optional[str] = None,
        only_files: bool = False,
    ) -> str:
        args = ["diff"]
        if only_files:
            args.append("--name-only")
        if base:
            args.append(base)
        if file_path:
            args.extend(["--", file_path])
        _, out, _ = await self._run_git(args, cwd=cwd)
        return out

    async def has_uncommitted_changes(
        self,
        cwd: Optional[Path] = None,
        untracked: bool = True,
    ) -> bool:
        args = ["status", "--porcelain"]
        if not untracked:
            args.append("--untracked-files=no")
        _, out, _ = await self._run_git(args, cwd=cwd)
        return bool(out)

    async def unmerged_commits(
        self,
        branch: str,
        target: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> list[str]:
        """One-line summaries of commits on `branch` that `target` lacks.

        `target` defaults to the current branch. A missing ref raises WorktreeError.
        """
        target = target or await self.current_branch(cwd=cwd)
        _, out, _ = await self._run_git(["log", f"{target}..{branch}", "--oneline"], cwd=cwd)
        return out.splitlines()

    async def add_and_commit(self, message: str, cwd: Optional[Path] = None) -> None:
        await self._run_git(["add", "--all"], cwd=cwd)
        await self._run_git(["commit", "-m", message], cwd=cwd)

    async def push(self, branch: str, remote: str = "origin", cwd: Optional[Path] = None) -> None:
        await self._run_git(["push", "--set-upstream", remote, branch], cwd=cwd)

    async def merge_branch(self, branch: str, message: str) -> bool:
        """Merge `branch` into the current branch. Returns False on conflicts."""
        code, _, err = await self._run_git(
            ["merge", "--no-ff", branch, "-m", message], check=False
        )
        if code != 0:
            logger.warning(f"Merge of {branch} failed: {err}")
        return code == 0

    async def abort_merge(self) -> None:
        await self._run_git(["merge", "--abort"])
