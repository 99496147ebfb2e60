"""Jira REST API v2 ticket tracker client."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ticketpilot.workflow.errors import CollaboratorUnavailable, TicketNotFoundError
from ticketpilot.workflow.models import Ticket

logger = logging.getLogger(__name__)

TICKET_FIELDS = ["summary", "description", "issuetype", "priority", "status", "labels"]


class JiraClient:
    """Ticket tracker backed by a Jira Cloud or Server instance.

    Authenticates with basic auth (account email + API token).
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the Jira client.

        Args:
            base_url: Jira site URL, e.g. https://example.atlassian.net
            email: Account email used for basic auth
            api_token: Jira API token
            timeout: Request timeout in seconds
            client: Preconfigured httpx.Client (mainly for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(
            base_url=f"{self.base_url}/rest/api/2/",
            auth=(email, api_token),
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise CollaboratorUnavailable("jira", f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise CollaboratorUnavailable(
                "jira", f"Authentication failed ({response.status_code}) for {method} {path}"
            )
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        raise CollaboratorUnavailable(
            "jira", f"{action} failed with status {response.status_code}: {response.text[:200]}"
        )

    def browse_url(self, ticket_id: str) -> str:
        return f"{self.base_url}/browse/{ticket_id}"

    def _to_ticket(self, issue: dict[str, Any]) -> Ticket:
        fields = issue.get("fields") or {}
        return Ticket(
            id=issue["key"],
            title=fields.get("summary") or "",
            description=fields.get("description") or "",
            type=(fields.get("issuetype") or {}).get("name", "Task"),
            priority=(fields.get("priority") or {}).get("name", "Medium"),
            status=(fields.get("status") or {}).get("name", ""),
            labels=list(fields.get("labels") or []),
            url=self.browse_url(issue["key"]),
        )

    def fetch_ticket(self, ticket_id: str) -> Ticket:
        """Fetch a ticket by key.

        Raises:
            TicketNotFoundError: If Jira has no such ticket
            CollaboratorUnavailable: On network, auth or server errors
        """
        logger.info(f"Fetching ticket {ticket_id} from Jira")
        response = self._request(
            "GET", f"issue/{ticket_id}", params={"fields": ",".join(TICKET_FIELDS)}
        )
        if response.status_code == 404:
            raise TicketNotFoundError(ticket_id)
        self._raise_for_status(response, f"Fetching {ticket_id}")
        return self._to_ticket(response.json())

    def post_comment(self, ticket_id: str, text: str) -> None:
        response = self._request("POST", f"issue/{ticket_id}/comment", json={"body": text})
        if response.status_code == 404:
            raise TicketNotFoundError(ticket_id)
        self._raise_for_status(response, f"Commenting on {ticket_id}")
        logger.debug(f"Posted comment on {ticket_id}")

    def search(self, query: str, max_results: int = 50) -> list[Ticket]:
        """Search tickets with a JQL query."""
        logger.info(f"Searching tickets with JQL: {query}")
        response = self._request(
            "POST",
            "search",
            json={"jql": query, "maxResults": max_results, "fields": TICKET_FIELDS},
        )
        self._raise_for_status(response, "Search")
        return [self._to_ticket(issue) for issue in response.json().get("issues", [])]

    def add_remote_link(self, ticket_id: str, url: str, title: str) -> None:
        response = self._request(
            "POST",
            f"issue/{ticket_id}/remotelink",
            json={"object": {"url": url, "title": title}},
        )
        if response.status_code == 404:
            raise TicketNotFoundError(ticket_id)
        self._raise_for_status(response, f"Linking {url} to {ticket_id}")
