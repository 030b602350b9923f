"""Git helper functions used by worker sandboxes."""

from __future__ import annotations

from pathlib import Path

from . import exec as exec_util
from .services.errors import DependencyMissingError


def _run_git(
    args: list[str], *, runner: exec_util.CommandRunner | None = None
) -> exec_util.CommandResult:
    result = exec_util.run_with_runner(
        exec_util.CommandRequest(argv=("git", *args)),
        runner=runner,
    )
    if result is None:
        raise DependencyMissingError("missing required command: git")
    return result


def git_run_checked(
    repo_dir: Path, args: list[str], *, runner: exec_util.CommandRunner | None = None
) -> exec_util.CommandResult:
    """Run ``git -C repo_dir <args>`` and raise on failure."""
    return exec_util.run_checked(["git", "-C", str(repo_dir), *args], runner=runner)


def git_current_branch(
    repo_dir: Path, *, runner: exec_util.CommandRunner | None = None
) -> str | None:
    """Return the current branch name, or ``None`` when detached or unavailable."""
    result = _run_git(["-C", str(repo_dir), "rev-parse", "--abbrev-ref", "HEAD"], runner=runner)
    if not result.ok:
        return None
    branch = result.stdout.strip()
    if not branch or branch == "HEAD":
        return None
    return branch


def git_status_porcelain(
    repo_dir: Path, *, runner: exec_util.CommandRunner | None = None
) -> list[str]:
    """Return porcelain status lines for the working tree (empty on error)."""
    result = _run_git(["-C", str(repo_dir), "status", "--porcelain"], runner=runner)
    if not result.ok:
        return []
    return [line for line in result.stdout.splitlines() if line.strip()]


def git_stash_count(repo_dir: Path, *, runner: exec_util.CommandRunner | None = None) -> int:
    result = _run_git(["-C", str(repo_dir), "stash", "list"], runner=runner)
    if not result.ok:
        return 0
    return len([line for line in result.stdout.splitlines() if line.strip()])


def git_ref_exists(
    repo_dir: Path, ref: str, *, runner: exec_util.CommandRunner | None = None
) -> bool:
    """Check whether a git ref exists (e.g. ``refs/heads/main``)."""
    result = _run_git(
        ["-C", str(repo_dir), "show-ref", "--verify", "--quiet", ref], runner=runner
    )
    return result.ok


def git_rev_count(
    repo_dir: Path, revision_range: str, *, runner: exec_util.CommandRunner | None = None
) -> int | None:
    """Count commits in a ``a..b`` range; ``None`` on error."""
    result = _run_git(
        ["-C", str(repo_dir), "rev-list", "--count", revision_range], runner=runner
    )
    if not result.ok:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def git_commits_ahead(
    repo_dir: Path, base: str, branch: str, *, runner: exec_util.CommandRunner | None = None
) -> int | None:
    """Count commits in ``branch`` that are not in ``base``."""
    return git_rev_count(repo_dir, f"{base}..{branch}", runner=runner)


def git_upstream_branch(
    repo_dir: Path, *, runner: exec_util.CommandRunner | None = None
) -> str | None:
    result = _run_git(
        ["-C", str(repo_dir), "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"],
        runner=runner,
    )
    if not result.ok:
        return None
    return result.stdout.strip() or None


def git_unpushed_count(
    repo_dir: Path, base: str, *, runner: exec_util.CommandRunner | None = None
) -> int:
    """Count local commits not on the upstream (or, without one, not on ``base``)."""
    upstream = git_upstream_branch(repo_dir, runner=runner)
    reference = upstream or f"origin/{base}"
    count = git_rev_count(repo_dir, f"{reference}..HEAD", runner=runner)
    return count or 0


def git_push(
    repo_dir: Path, branch: str, *, runner: exec_util.CommandRunner | None = None
) -> None:
    git_run_checked(repo_dir, ["push", "-u", "origin", branch], runner=runner)


def git_delete_branch(
    repo_dir: Path, branch: str, *, runner: exec_util.CommandRunner | None = None
) -> bool:
    """Force-delete a local branch; returns ``False`` when it did not exist."""
    if not git_ref_exists(repo_dir, f"refs/heads/{branch}", runner=runner):
        return False
    git_run_checked(repo_dir, ["branch", "-D", branch], runner=runner)
    return True


def git_worktree_add(
    repo_dir: Path,
    worktree_path: Path,
    *,
    branch: str,
    base: str,
    runner: exec_util.CommandRunner | None = None,
) -> None:
    """Add a worktree on ``branch``, creating it from ``base`` when missing."""
    if git_ref_exists(repo_dir, f"refs/heads/{branch}", runner=runner):
        args = ["worktree", "add", str(worktree_path), branch]
    elif git_ref_exists(repo_dir, f"refs/remotes/origin/{base}", runner=runner):
        args = ["worktree", "add", "-b", branch, str(worktree_path), f"origin/{base}"]
    else:
        args = ["worktree", "add", "-b", branch, str(worktree_path), base]
    git_run_checked(repo_dir, args, runner=runner)


def git_worktree_remove(
    repo_dir: Path,
    worktree_path: Path,
    *,
    force: bool = False,
    runner: exec_util.CommandRunner | None = None,
) -> bool:
    """Remove a worktree; returns ``False`` if git refused."""
    args = ["-C", str(repo_dir), "worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(worktree_path))
    return _run_git(args, runner=runner).ok


def git_worktree_prune(repo_dir: Path, *, runner: exec_util.CommandRunner | None = None) -> None:
    _run_git(["-C", str(repo_dir), "worktree", "prune"], runner=runner)


def git_fetch(repo_dir: Path, *, runner: exec_util.CommandRunner | None = None) -> bool:
    return _run_git(["-C", str(repo_dir), "fetch", "--quiet", "origin"], runner=runner).ok
