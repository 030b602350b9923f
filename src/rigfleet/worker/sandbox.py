"""Git worktree sandboxes forked from each rig's canonical clone."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from .. import exec as exec_util
from .. import git, log, paths
from ..ports import SandboxStatus
from ..services.errors import PreconditionFailedError, UnexpectedStateError


@dataclass(frozen=True)
class GitSandboxes:
    """``SandboxManager`` implementation backed by ``git worktree``."""

    town_root: Path
    runner: exec_util.CommandRunner | None = None

    def _clone(self, rig: str) -> Path:
        clone = paths.canonical_clone_dir(self.town_root, rig)
        if not (clone / ".git").exists():
            raise PreconditionFailedError(
                f"canonical clone missing for rig {rig}: {clone}",
                recovery_hint="clone the rig repository into <rig>/mayor/rig",
            )
        return clone

    def add(self, rig: str, name: str, *, branch: str, base_branch: str) -> Path:
        """Create the worktree for ``name``; an existing healthy one is reused."""
        target = paths.worker_dir(self.town_root, rig, name)
        if target.exists():
            if self.is_worktree(target):
                return target
            raise UnexpectedStateError(
                f"sandbox path exists but is not a git worktree: {target}",
                recovery_hint=f"rigfleet worker nuke {rig}/{name} --force",
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        clone = self._clone(rig)
        git.git_fetch(clone, runner=self.runner)
        git.git_worktree_add(clone, target, branch=branch, base=base_branch, runner=self.runner)
        log.debug(f"created worktree {target} on {branch}")
        return target

    def remove(self, rig: str, path: Path, *, force: bool = False) -> None:
        """Remove a worktree; a missing path is not an error."""
        clone = paths.canonical_clone_dir(self.town_root, rig)
        if path.exists():
            removed = git.git_worktree_remove(clone, path, force=force, runner=self.runner)
            if not removed and path.exists():
                log.debug(f"git worktree remove refused {path}; deleting directory")
                shutil.rmtree(path, ignore_errors=True)
        if clone.exists():
            git.git_worktree_prune(clone, runner=self.runner)

    def is_worktree(self, path: Path) -> bool:
        return (path / ".git").exists()

    def status(self, path: Path, *, base_branch: str) -> SandboxStatus:
        if not self.is_worktree(path):
            return SandboxStatus()
        return SandboxStatus(
            uncommitted=tuple(git.git_status_porcelain(path, runner=self.runner)),
            stash_count=git.git_stash_count(path, runner=self.runner),
            unpushed_commits=git.git_unpushed_count(path, base_branch, runner=self.runner),
        )

    def current_branch(self, path: Path) -> str | None:
        return git.git_current_branch(path, runner=self.runner)

    def commits_ahead(self, path: Path, *, base_branch: str) -> int | None:
        git.git_fetch(path, runner=self.runner)
        return git.git_commits_ahead(path, f"origin/{base_branch}", "HEAD", runner=self.runner)

    def behind_count(self, path: Path, *, base_branch: str) -> int | None:
        return git.git_rev_count(path, f"HEAD..origin/{base_branch}", runner=self.runner)

    def push(self, path: Path, branch: str) -> None:
        git.git_push(path, branch, runner=self.runner)

    def delete_branch(self, rig: str, branch: str) -> None:
        clone = paths.canonical_clone_dir(self.town_root, rig)
        if not clone.exists():
            return
        git.git_delete_branch(clone, branch, runner=self.runner)
