"""GitHub pull request host client."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from ticketpilot.workflow.errors import CollaboratorUnavailable
from ticketpilot.workflow.models import PullRequestInfo

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"


def parse_repository(repo: str) -> tuple[str, str]:
    """Split "owner/repo" or a github.com URL into (owner, repo).

    Raises:
        ValueError: If the value does not name a GitHub repository
    """
    value = repo.strip().removesuffix(".git")
    if "github.com" in value:
        value = value.split("github.com", 1)[1].lstrip("/:")
    parts = [part for part in value.split("/") if part]
    if len(parts) < 2:
        raise ValueError(f"Invalid GitHub repository: {repo}")
    return parts[0], parts[1]


class GitHubClient:
    """Opens pull requests through the GitHub REST API."""

    def __init__(
        self,
        repository: str,
        token: str,
        api_url: str = GITHUB_API_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the GitHub client.

        Args:
            repository: "owner/repo" or repository URL
            token: Personal access token with repo scope
            api_url: API root (GitHub Enterprise installs differ)
            timeout: Request timeout in seconds
            client: Preconfigured httpx.Client (mainly for tests)
        """
        self.owner, self.repo = parse_repository(repository)
        self.client = client or httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
            },
            timeout=timeout,
        )

    def close(self) -> None:
        self.client.close()

    def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            return self.client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise CollaboratorUnavailable("github", "GitHub API request timed out") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise CollaboratorUnavailable("github", f"POST {path} failed: {e}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("message", response.text)
        except ValueError:
            return response.text

    def open_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
        labels: Sequence[str] = (),
        reviewers: Sequence[str] = (),
    ) -> PullRequestInfo:
        """Open a pull request, then apply labels and request reviewers.

        Labels and reviewers are best effort: failures are logged and the
        pull request is still returned.

        Raises:
            CollaboratorUnavailable: If the pull request could not be created
        """
        pulls_path = f"/repos/{self.owner}/{self.repo}/pulls"
        response = self._post(
            pulls_path,
            {"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )
        if response.status_code != 201:
            raise CollaboratorUnavailable(
                "github",
                f"GitHub API error ({response.status_code}): {self._error_message(response)}",
            )

        data = response.json()
        info = PullRequestInfo(
            number=data["number"],
            url=data["html_url"],
            title=title,
            source_branch=head,
            target_branch=base,
        )
        logger.info(f"Created pull request #{info.number}: {info.url}")

        if labels:
            self._best_effort(
                f"/repos/{self.owner}/{self.repo}/issues/{info.number}/labels",
                {"labels": list(labels)},
                "add labels",
            )
        if reviewers:
            self._best_effort(
                f"{pulls_path}/{info.number}/requested_reviewers",
                {"reviewers": list(reviewers)},
                "request reviewers",
            )
        return info

    def _best_effort(self, path: str, payload: dict[str, Any], action: str) -> None:
        try:
            response = self._post(path, payload)
        except CollaboratorUnavailable as e:
            logger.warning(f"Could not {action}: {e}")
            return
        if not response.is_success:
            logger.warning(
                f"Could not {action} ({response.status_code}): {self._error_message(response)}"
            )
