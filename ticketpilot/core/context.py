"""Project context detection and path resolution."""

from pathlib import Path
from typing import Optional


class ProjectContext:
    """Detects the repository a workflow operates on.

    Attributes:
        cwd: Current working directory (invocation location)
        project_root: Repository root directory containing .git
        claude_dir: .claude directory of the project, if any
    """

    def __init__(self, cwd: Optional[Path] = None):
        """Initialize context by detecting project root and .claude directory from cwd.

        Args:
            cwd: Working directory to start detection from (default: Path.cwd())
        """
        self.cwd = cwd or Path.cwd()
        self.project_root = self._find_project_root()
        self.claude_dir = self._find_claude_dir()

    def _find_project_root(self) -> Path:
        """Walk up directory tree to find project root containing .git.

        Returns:
            Path to project root, or self.cwd if no marker found
        """
        current = self.cwd
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return self.cwd

    def _find_claude_dir(self) -> Optional[Path]:
        claude_dir = self.project_root / ".claude"
        return claude_dir if claude_dir.is_dir() else None

    def instructions_file(self, name: str) -> Optional[Path]:
        """Project-specific prompt instructions in .claude/ticketpilot/<name>.md, if present."""
        if self.claude_dir is None:
            return None
        candidate = self.claude_dir / "ticketpilot" / f"{name}.md"
        return candidate if candidate.is_file() else None
