"""XDG-compliant configuration management for ticketpilot."""

import os
import tomllib
from pathlib import Path
from typing import Optional

ENV_OVERRIDES = {
    "jira.api_token": "JIRA_API_TOKEN",
    "jira.email": "JIRA_EMAIL",
    "github.token": "GITHUB_TOKEN",
}


class Config:
    """Manages ticketpilot configuration following XDG Base Directory spec.

    Attributes:
        config_dir: Path to ~/.config/ticketpilot/
        config_file: Path to ~/.config/ticketpilot/config.toml
        state_dir: Path to ~/.local/state/ticketpilot/ (phase state, pending and cached analyses)
    """

    def __init__(self, config_file: Optional[Path] = None):
        """Initialize config paths using XDG Base Directory specification.

        Args:
            config_file: Explicit config file, overriding the XDG location
        """
        xdg_config = os.getenv("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
        self.config_dir = Path(xdg_config) / "ticketpilot"
        self.config_file = config_file or self.config_dir / "config.toml"

        xdg_state = os.getenv("XDG_STATE_HOME", os.path.expanduser("~/.local/state"))
        self.state_dir = Path(xdg_state) / "ticketpilot"

        self._config = self._load() if self.config_file.exists() else {}

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_file.exists()

    def _load(self) -> dict:
        try:
            with open(self.config_file, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise RuntimeError(f"Failed to load config {self.config_file}: {e}") from e

    def get(self, key: str, default=None):
        """Get configuration value by key (supports dot notation).

        Secrets listed in ENV_OVERRIDES are taken from the environment when
        the variable is set.

        Args:
            key: Configuration key (e.g., 'jira.base_url')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        env_var = ENV_OVERRIDES.get(key)
        if env_var and os.getenv(env_var):
            return os.getenv(env_var)

        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def require(self, key: str) -> str:
        """Get a mandatory, non-empty setting.

        Raises:
            ValueError: If the setting is missing or empty
        """
        value = self.get(key)
        if not value:
            hint = f" or set {ENV_OVERRIDES[key]}" if key in ENV_OVERRIDES else ""
            raise ValueError(f"Missing setting '{key}' in {self.config_file}{hint}")
        return value

    @property
    def phase_state_file(self) -> Path:
        return self.state_dir / "workflow-state.json"

    @property
    def analyses_dir(self) -> Path:
        return self.state_dir / "analyses"

    @property
    def analysis_cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @staticmethod
    def get_default_config() -> str:
        """Return default configuration TOML template."""
        return """# ticketpilot Configuration
# Location: ~/.config/ticketpilot/config.toml
# Follows XDG Base Directory Specification

[jira]
# Jira site, e.g. "https://example.atlassian.net"
base_url = ""
# Account email for basic auth (or set JIRA_EMAIL)
email = ""
# API token (prefer the JIRA_API_TOKEN environment variable)
# api_token = ""

[github]
# Repository pull requests are opened against ("owner/repo")
repository = ""
# Token (prefer the GITHUB_TOKEN environment variable)
# token = ""
# Open pull requests as drafts
draft = false
# Reviewers requested on every pull request
reviewers = []

[git]
# Remote branches are pushed to
remote = "origin"
# Branch that work branches start from and pull requests target
default_branch = "main"
feature_prefix = "feature/"
bugfix_prefix = "bugfix/"

[workflow]
# Continue into implementation as soon as the analysis is posted
auto_approve = false
auto_build = true
auto_run_tests = true
auto_create_pull_request = true
# Post the analysis and link pull requests on the ticket
auto_update_tracker = true
# Reuse the previous analysis while the ticket title and description are unchanged
use_analysis_cache = true

[claude]
# Claude CLI command (override if using custom path)
cli_command = "claude"
# Seconds before a Claude invocation is abandoned
timeout = 1800

[build]
build_command = "make build"
test_command = "pytest --cov"
timeout = 1800
"""

    def create_default(self) -> Path:
        """Create default configuration file.

        Returns:
            Path to created config file

        Raises:
            FileExistsError: If config already exists
        """
        if self.config_file.exists():
            raise FileExistsError(
                f"Configuration already exists: {self.config_file}\n"
                "Remove it first or use --force to overwrite"
            )

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(self.get_default_config())

        return self.config_file

    def create_directories(self) -> dict:
        """Create the XDG config and state directories for ticketpilot."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.analyses_dir.mkdir(parents=True, exist_ok=True)
        self.analysis_cache_dir.mkdir(parents=True, exist_ok=True)

        return {
            "config": self.config_dir,
            "state": self.state_dir,
            "analyses": self.analyses_dir,
            "cache": self.analysis_cache_dir,
        }
