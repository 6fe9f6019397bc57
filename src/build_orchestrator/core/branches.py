"""Task branch and worktree lifecycle on top of the git wrappers."""

import logging
import shutil
import time
from pathlib import Path

from build_orchestrator.core.agents import is_pid_alive
from build_orchestrator.core.sessions import read_heartbeat
from build_orchestrator.integrations import git
from build_orchestrator.integrations.git import GitError, MergeConflictError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "bo/"
STALE_LOCK_SECONDS = 600.0
STATE_DIR = ".orchestrator"


class BranchConflictError(Exception):
    """Raised when a task branch is held by another live agent."""


def branch_name_for(task_id: str) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


class BranchManager:
    def __init__(self, repo_path: str | Path, worktree_dir: str = ".worktrees", base_branch: str = "main"):
        self.repo_path = Path(repo_path)
        self.worktree_root = self.repo_path / worktree_dir
        self.base_branch = base_branch

    def worktree_path_for(self, task_id: str) -> Path:
        return self.worktree_root / task_id

    def ensure_ignored(self):
        """Keep worktrees and agent state out of every commit via info/exclude."""
        exclude = git.common_dir(self.repo_path) / "info" / "exclude"
        existing = exclude.read_text().splitlines() if exclude.exists() else []
        patterns = [f"/{self.worktree_root.name}/", f"/{STATE_DIR}/"]
        missing = [p for p in patterns if p not in existing]
        if not missing:
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with exclude.open("a") as f:
            if existing and existing[-1]:
                f.write("\n")
            f.write("\n".join(missing) + "\n")

    # ── Branches (single working tree) ──────────────────────────────────────

    def create_branch(self, branch: str):
        git.checkout(self.repo_path, branch, create=True, start_point=self.base_branch)

    def create_or_checkout_branch(self, branch: str, fresh: bool = False):
        """Switch the main working tree to the task branch, creating it from base if needed."""
        self.ensure_ignored()
        self.ensure_on_main()
        if git.branch_exists(self.repo_path, branch):
            if not fresh:
                git.checkout(self.repo_path, branch)
                return
            git.delete_branch(self.repo_path, branch, force=True)
        self.create_branch(branch)

    def ensure_on_main(self):
        if git.get_current_branch(self.repo_path) != self.base_branch:
            git.checkout(self.repo_path, self.base_branch)

    def revert_and_return_to_main(self, branch: str):
        """Throw away uncommitted work and leave the main tree on base."""
        try:
            git.reset_hard(self.repo_path)
            git.clean(self.repo_path)
            self.ensure_on_main()
        except GitError as e:
            logger.warning("Could not return %s to %s: %s", self.repo_path, self.base_branch, e)
        self.delete_branch(branch)

    def delete_branch(self, branch: str):
        """Best-effort branch deletion."""
        if not git.branch_exists(self.repo_path, branch):
            return
        try:
            git.delete_branch(self.repo_path, branch, force=True)
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch, e)

    # ── Worktrees ───────────────────────────────────────────────────────────

    def create_task_worktree(self, task_id: str, branch: str, reuse: bool = False) -> Path:
        """Return a worktree on the task branch.

        With ``reuse`` an existing worktree (and its commits) is kept;
        otherwise any previous worktree and branch are replaced by a fresh
        one cut from base. A worktree whose heartbeat names a live process
        belongs to another agent and is never touched.
        """
        self.ensure_ignored()
        path = self.worktree_path_for(task_id)
        if path.exists():
            heartbeat = read_heartbeat(path, task_id)
            if heartbeat and is_pid_alive(heartbeat.pid):
                raise BranchConflictError(
                    f"Branch {branch} is in use by a live agent (PID {heartbeat.pid})"
                )
            if reuse and git.branch_exists(self.repo_path, branch):
                return path
            self.remove_task_worktree(task_id)
        else:
            git.worktree_prune(self.repo_path)

        if git.branch_exists(self.repo_path, branch):
            if reuse:
                git.worktree_add(self.repo_path, path, branch, create_branch=False)
                return path
            self.delete_branch(branch)

        path.parent.mkdir(parents=True, exist_ok=True)
        git.worktree_add(self.repo_path, path, branch, self.base_branch, create_branch=True)
        logger.info("Created worktree %s on %s", path, branch)
        return path

    def remove_task_worktree(self, task_id: str):
        """Best-effort removal of a task's worktree."""
        path = self.worktree_path_for(task_id)
        if path.exists():
            try:
                git.worktree_remove(self.repo_path, path, force=True)
            except GitError as e:
                logger.warning("git worktree remove failed for %s: %s", path, e)
                shutil.rmtree(path, ignore_errors=True)
        try:
            git.worktree_prune(self.repo_path)
        except GitError:
            pass

    def list_task_worktrees(self) -> dict[str, Path]:
        """Task id to path for every worktree under the worktree root."""
        root = self.worktree_root.resolve()
        found = {}
        try:
            worktrees = git.worktree_list(self.repo_path)
        except GitError as e:
            logger.warning("Could not list worktrees: %s", e)
            return found
        for wt in worktrees:
            path = Path(wt.path).resolve()
            if path.parent == root:
                found[path.name] = path
        return found

    def prune_orphan_worktrees(self, keep_task_ids: set[str]) -> list[str]:
        removed = []
        for task_id in self.list_task_worktrees():
            if task_id not in keep_task_ids:
                self.remove_task_worktree(task_id)
                removed.append(task_id)
        return removed

    # ── Diffs ───────────────────────────────────────────────────────────────

    def capture_branch_diff(self, branch: str) -> str:
        try:
            return git.diff(self.repo_path, f"{self.base_branch}...{branch}")
        except GitError as e:
            logger.warning("Could not diff %s: %s", branch, e)
            return ""

    def capture_uncommitted_diff(self, cwd: str | Path) -> str:
        try:
            return git.diff(cwd, "HEAD")
        except GitError as e:
            logger.warning("Could not diff working tree %s: %s", cwd, e)
            return ""

    def get_changed_files(self, branch: str, cwd: str | Path | None = None) -> list[str]:
        files: list[str] = []
        try:
            out = git.diff(self.repo_path, f"{self.base_branch}...{branch}", name_only=True)
            files.extend(line for line in out.split("\n") if line)
            if cwd is not None:
                out = git.diff(cwd, "HEAD", name_only=True)
                files.extend(line for line in out.split("\n") if line and line not in files)
        except GitError as e:
            logger.warning("Could not list changed files for %s: %s", branch, e)
        return files

    # ── Commit and merge ────────────────────────────────────────────────────

    def commit_wip(self, cwd: str | Path, task_id: str) -> bool:
        return git.commit_all(cwd, f"WIP: {task_id}")

    def merge_to_main(self, branch: str, message: str):
        """Merge the task branch into base in the main working tree."""
        self.ensure_on_main()
        git.merge(self.repo_path, branch, message)

    def conclude_merge(self, message: str):
        git.commit_merge(self.repo_path, message)

    def merge_abort(self):
        try:
            git.merge_abort(self.repo_path)
        except GitError as e:
            logger.warning("git merge --abort failed: %s", e)

    def is_merge_in_progress(self) -> bool:
        try:
            return git.is_merge_in_progress(self.repo_path)
        except GitError:
            return False

    def conflicted_files(self) -> list[str]:
        return git.conflicted_files(self.repo_path)

    # ── Repository locks ────────────────────────────────────────────────────

    def _index_lock(self) -> Path:
        return git.git_dir(self.repo_path) / "index.lock"

    def wait_for_git_ready(self, timeout: float = 30.0, interval: float = 0.5) -> bool:
        """Wait for another git process to release the index lock."""
        deadline = time.monotonic() + timeout
        lock = self._index_lock()
        while lock.exists():
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for %s", lock)
                return False
            time.sleep(interval)
        return True

    def remove_stale_index_lock(self, max_age: float = STALE_LOCK_SECONDS) -> bool:
        lock = self._index_lock()
        try:
            age = time.time() - lock.stat().st_mtime
        except FileNotFoundError:
            return False
        if age < max_age:
            return False
        lock.unlink(missing_ok=True)
        logger.warning("Removed stale git lock %s (%.0fs old)", lock, age)
        return True


__all__ = [
    "BranchConflictError",
    "BranchManager",
    "MergeConflictError",
    "branch_name_for",
]
