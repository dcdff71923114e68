"""Linear issue tracker client (GraphQL over httpx)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..safety.redaction import redact_sensitive_text

logger = logging.getLogger(__name__)


class TrackerUnavailable(Exception):
    """Tracker API could not be reached or rejected the request."""

    pass


@dataclass
class TrackerState:
    """A workflow state as configured in the tracker."""

    id: str
    name: str
    type: Optional[str] = None


@dataclass
class IssueInfo:
    """Subset of an issue the orchestrator needs."""

    id: str
    identifier: Optional[str]
    title: str
    description: str
    state: Optional[TrackerState]
    team_id: Optional[str]
    team_key: Optional[str]
    labels: list[str] = field(default_factory=list)


_ISSUE_QUERY = """
query Issue($id: String!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    state { id name type }
    team { id key }
    labels { nodes { name } }
  }
}
"""

_TEAM_STATES_QUERY = """
query TeamStates($id: String!) {
  team(id: $id) {
    states { nodes { id name type } }
  }
}
"""

_ISSUE_UPDATE_MUTATION = """
mutation IssueUpdate($id: String!, $stateId: String!) {
  issueUpdate(id: $id, input: { stateId: $stateId }) { success }
}
"""

_COMMENT_CREATE_MUTATION = """
mutation CommentCreate($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
    comment { id }
  }
}
"""


class LinearClient:
    """Thin async client for the Linear GraphQL API.

    Without an API key the client is disabled: writes are skipped with a
    warning and reads return None.
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_url: str = "https://api.linear.app/graphql",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            api_key: Linear API key (None disables the client)
            api_url: GraphQL endpoint
            timeout_sec: Request timeout
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.api_url = api_url
        self.timeout_sec = timeout_sec
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def get_issue(self, issue_id: str) -> Optional[IssueInfo]:
        """Fetch an issue with its state, team and labels."""
        if not self.enabled:
            logger.warning("LINEAR_API_KEY not set, cannot read issue %s", issue_id)
            return None

        data = await self._request(_ISSUE_QUERY, {"id": issue_id})
        issue = data.get("issue")
        if not issue:
            return None

        state = issue.get("state")
        team = issue.get("team") or {}
        return IssueInfo(
            id=issue["id"],
            identifier=issue.get("identifier"),
            title=issue.get("title") or "",
            description=issue.get("description") or "",
            state=TrackerState(state["id"], state["name"], state.get("type")) if state else None,
            team_id=team.get("id"),
            team_key=team.get("key"),
            labels=[n["name"] for n in (issue.get("labels") or {}).get("nodes", [])],
        )

    async def get_issue_state(self, issue_id: str) -> Optional[TrackerState]:
        issue = await self.get_issue(issue_id)
        return issue.state if issue else None

    async def list_team_states(self, team_id: str) -> list[TrackerState]:
        """List the workflow states configured for a team."""
        if not self.enabled:
            return []

        data = await self._request(_TEAM_STATES_QUERY, {"id": team_id})
        nodes = ((data.get("team") or {}).get("states") or {}).get("nodes", [])
        return [TrackerState(n["id"], n["name"], n.get("type")) for n in nodes]

    async def update_issue_state(self, issue_id: str, state_id: str) -> bool:
        """Move an issue to state_id."""
        if not self.enabled:
            logger.warning("LINEAR_API_KEY not set, skipping state update")
            return False

        data = await self._request(_ISSUE_UPDATE_MUTATION, {"id": issue_id, "stateId": state_id})
        return bool((data.get("issueUpdate") or {}).get("success"))

    async def post_comment(self, issue_id: str, body: str) -> Optional[str]:
        """Post a comment.

        Returns:
            Comment id, or None when the client is disabled
        """
        if not self.enabled:
            logger.warning("LINEAR_API_KEY not set, skipping comment post")
            return None

        data = await self._request(_COMMENT_CREATE_MUTATION, {"issueId": issue_id, "body": body})
        result = data.get("commentCreate") or {}
        if not result.get("success"):
            raise TrackerUnavailable(f"Comment on {issue_id} was not accepted")
        logger.info("Posted comment to issue %s", issue_id)
        return (result.get("comment") or {}).get("id")

    async def _request(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": self.api_key or "", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_sec, transport=self.transport
            ) as client:
                response = await client.post(
                    self.api_url,
                    json={"query": query, "variables": variables},
                    headers=headers,
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TrackerUnavailable(f"Linear request failed: {redact_sensitive_text(str(exc))}")

        if payload.get("errors"):
            messages = "; ".join(e.get("message", "unknown error") for e in payload["errors"])
            raise TrackerUnavailable(f"Linear API error: {messages}")
        return payload.get("data") or {}
