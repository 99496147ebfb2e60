"""Git operations wrapper using subprocess for branch, commit and push.

This module provides a GitOperations class that wraps the git subprocess
commands the orchestrator needs while implementing a ticket. Branch
preparation is idempotent so an interrupted run can be retried.
"""

from __future__ import annotations

import subprocess
from typing import List, Optional

from ticketpilot.workflow.errors import CollaboratorUnavailable
from ticketpilot.workflow.models import CommitInfo


class GitError(CollaboratorUnavailable):
    """Exception raised when git operations fail."""

    def __init__(self, message: str):
        super().__init__("git", message)


class GitOperations:
    """Wrapper for git subprocess commands with proper error handling."""

    def __init__(self, repo_path: Optional[str] = None, remote: str = "origin"):
        """Initialize GitOperations.

        Args:
            repo_path: Path to git repository. If None, uses current directory.
            remote: Remote that branches are pulled from and pushed to
        """
        self.repo_path = repo_path
        self.remote = remote

    def _run_git_command(
        self, args: List[str], check: bool = True, capture_output: bool = True
    ) -> subprocess.CompletedProcess:
        """Run a git command with proper error handling.

        Args:
            args: Git command arguments (e.g., ["git", "status"])
            check: Whether to raise exception on non-zero exit code
            capture_output: Whether to capture stdout/stderr

        Returns:
            CompletedProcess object with command results

        Raises:
            GitError: If command fails and check=True
        """
        try:
            result = subprocess.run(
                args,
                cwd=self.repo_path,
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitError(f"Git executable not found: {e}") from e
        except OSError as e:
            raise GitError(f"Unexpected error running git command: {e}") from e

        if check and result.returncode != 0:
            raise GitError(
                f"Git command failed: {' '.join(args)}\n"
                f"Exit code: {result.returncode}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def branch_exists(self, branch_name: str) -> bool:
        result = self._run_git_command(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        return result.returncode == 0

    def checkout(self, branch_name: str) -> None:
        self._run_git_command(["git", "checkout", branch_name])

    def prepare_branch(self, branch_name: str, base_branch: str) -> None:
        """Check out a fresh work branch created from the up-to-date base branch.

        This operation is idempotent - if the branch already exists it is
        checked out as is.

        Args:
            branch_name: Name of the work branch
            base_branch: Branch to create it from (e.g., "main")

        Raises:
            GitError: If any git command fails
        """
        if self.branch_exists(branch_name):
            self.checkout(branch_name)
            return

        self.checkout(base_branch)
        self._run_git_command(["git", "pull", "--ff-only", self.remote, base_branch])
        self._run_git_command(["git", "checkout", "-b", branch_name])

    def stage_all(self) -> None:
        self._run_git_command(["git", "add", "-A"])

    def staged_changes(self) -> list[tuple[str, str, int, int]]:
        """List staged files with their change status and line counts.

        Returns:
            (status, path, lines_added, lines_removed) tuples, where status is
            git's letter ("A", "M", "D"); binary files count as 0 lines
        """
        status_output = self._run_git_command(
            ["git", "diff", "--cached", "--no-renames", "--name-status"]
        ).stdout
        numstat_output = self._run_git_command(
            ["git", "diff", "--cached", "--no-renames", "--numstat"]
        ).stdout

        counts: dict[str, tuple[int, int]] = {}
        for line in numstat_output.splitlines():
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            added, removed, path = parts
            counts[path] = (
                int(added) if added.isdigit() else 0,
                int(removed) if removed.isdigit() else 0,
            )

        changes = []
        for line in status_output.splitlines():
            parts = line.split("\t")
            if len(parts) != 2:
                continue
            status, path = parts
            added, removed = counts.get(path, (0, 0))
            changes.append((status[0], path, added, removed))
        return changes

    def commit(self, message: str) -> CommitInfo:
        """Commit staged changes and return the new commit.

        Raises:
            GitError: If there is nothing to commit or the commit fails
        """
        self._run_git_command(["git", "commit", "-m", message])
        result = self._run_git_command(["git", "rev-parse", "HEAD"])
        return CommitInfo(hash=result.stdout.strip(), message=message)

    def push_branch(self, branch_name: str) -> None:
        """Push branch to remote with upstream tracking.

        Raises:
            GitError: If push fails
        """
        self._run_git_command(["git", "push", "-u", self.remote, branch_name])

    def is_clean(self) -> bool:
        result = self._run_git_command(["git", "status", "--porcelain"])
        return not result.stdout.strip()

    def discard_changes(self) -> None:
        """Drop all tracked and untracked working tree changes."""
        self._run_git_command(["git", "reset", "--hard", "HEAD"])
        self._run_git_command(["git", "clean", "-fd"])
