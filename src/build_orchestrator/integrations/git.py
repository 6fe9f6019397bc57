"""Git subprocess wrappers for worktree, branch and merge operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


class MergeConflictError(GitError):
    """Raised when a merge stops on conflicting files."""

    def __init__(self, message: str, files: list[str]):
        super().__init__(message)
        self.files = files


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip() or e.stdout.strip()}") from e


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base_branch]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )
            current.clear()

    for line in output.split("\n"):
        if not line:
            flush()
        elif line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
    flush()

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def checkout(cwd: str | Path, branch: str, create: bool = False, start_point: str | None = None) -> str:
    args = ["checkout"]
    if create:
        args.append("-b")
    args.append(branch)
    if start_point:
        args.append(start_point)
    return run_git(args, cwd=cwd)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def diff(cwd: str | Path, *revs: str, name_only: bool = False) -> str:
    args = ["diff"]
    if name_only:
        args.append("--name-only")
    args += list(revs)
    return run_git(args, cwd=cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage everything and commit. Returns False when there was nothing to commit."""
    run_git(["add", "-A"], cwd=cwd)
    if not run_git(["diff", "--cached", "--name-only"], cwd=cwd):
        return False
    run_git(["commit", "--no-verify", "-m", message], cwd=cwd)
    return True


def commit_merge(cwd: str | Path, message: str):
    """Conclude an in-progress merge, even when the resolution matches HEAD."""
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "--no-verify", "-m", message], cwd=cwd)


def merge(cwd: str | Path, branch: str, message: str) -> str:
    """Merge a branch into the current one. Raises MergeConflictError on conflicts."""
    try:
        return run_git(["merge", "--no-ff", "-m", message, branch], cwd=cwd)
    except GitError as e:
        files = conflicted_files(cwd)
        if files:
            raise MergeConflictError(f"Merge of {branch} conflicts in {len(files)} file(s)", files) from e
        raise


def conflicted_files(cwd: str | Path) -> list[str]:
    try:
        out = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    except GitError:
        return []
    return [line for line in out.split("\n") if line]


def merge_abort(cwd: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=cwd)


def git_dir(cwd: str | Path) -> Path:
    """Absolute path of the repository's .git directory."""
    out = run_git(["rev-parse", "--git-dir"], cwd=cwd)
    path = Path(out)
    if not path.is_absolute():
        path = Path(cwd) / path
    return path


def common_dir(cwd: str | Path) -> Path:
    """The .git directory shared by the main tree and all of its worktrees."""
    out = run_git(["rev-parse", "--git-common-dir"], cwd=cwd)
    path = Path(out)
    if not path.is_absolute():
        path = Path(cwd) / path
    return path


def is_merge_in_progress(cwd: str | Path) -> bool:
    return (git_dir(cwd) / "MERGE_HEAD").exists()


def reset_hard(cwd: str | Path, rev: str = "HEAD") -> str:
    return run_git(["reset", "--hard", rev], cwd=cwd)


def clean(cwd: str | Path) -> str:
    return run_git(["clean", "-fd"], cwd=cwd)
