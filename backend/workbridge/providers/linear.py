"""Linear provider: GraphQL with nodes/pageInfo pagination.

Teams are containers, issues are items and issue comments are replies.
GraphQL failures arrive in an ``errors`` array, sometimes with HTTP 200
and sometimes with 400, so both paths go through ``_raise_for_errors``.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from workbridge.errors import (
    ProviderAPIError,
    ProviderAuthError,
    RateLimitedError,
)
from workbridge.importer.models import (
    ExternalChannel,
    ExternalMessage,
    ExternalUser,
    Page,
)
from workbridge.models import RateLimitInfo, WorkspaceMetadata
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.utils import order_parents_first, safe_json
from workbridge.providers.base import HTTPImportProvider

LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"

ITEMS_PER_PAGE = 50
USERS_PER_PAGE = 100
COMMENTS_PER_ISSUE = 100

RATE_LIMIT_RETRY_AFTER = 60.0

_ORGANIZATION_QUERY = "query Organization { organization { id name urlKey } }"

_USERS_QUERY = """
query Users($first: Int!, $after: String) {
  users(first: $first, after: $after) {
    nodes { id name displayName email avatarUrl active admin }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_TEAMS_QUERY = """
query Teams($first: Int!, $after: String) {
  teams(first: $first, after: $after) {
    nodes { id name key description private createdAt }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_TEAM_ISSUES_QUERY = """
query TeamIssues(
  $teamId: String!, $first: Int!, $after: String,
  $filter: IssueFilter, $includeArchived: Boolean
) {
  team(id: $teamId) {
    issues(
      first: $first, after: $after,
      filter: $filter, includeArchived: $includeArchived
    ) {
      nodes {
        id identifier number title description priority url
        createdAt updatedAt completedAt archivedAt
        state { name type }
        creator { id }
        assignee { id }
        project { id name }
        labels { nodes { name } }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

_ISSUE_COMMENTS_QUERY = """
query IssueComments($issueId: String!, $first: Int!) {
  issue(id: $issueId) {
    comments(first: $first) {
      nodes { id body createdAt user { id } parent { id } }
    }
  }
}
"""


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def issue_body(identifier: str, title: str, description: str | None) -> str:
    """Render an issue as ``**ENG-1**: Title`` followed by its description."""
    body = f"**{identifier}**: {title}"
    if description:
        body += f"\n\n{description}"
    return body


class LinearImportProvider(HTTPImportProvider):
    container_label = "teams"
    item_label = "issues"
    reply_config_flag = "include_comments"
    supports_replies = True
    required_scopes = ("read",)

    min_delay = 0.1
    max_delay = 30.0
    default_retry_after = RATE_LIMIT_RETRY_AFTER

    @property
    def platform(self) -> str:
        return "linear"

    def _parse_quota(self, headers: Mapping[str, str]) -> RateLimitInfo | None:
        remaining = headers.get("x-ratelimit-requests-remaining")
        reset = headers.get("x-ratelimit-requests-reset")
        if remaining is None and reset is None:
            return None
        try:
            return RateLimitInfo(
                remaining=int(remaining) if remaining is not None else 0,
                reset_at=int(reset) / 1000 if reset is not None else 0.0,
            )
        except ValueError:
            return None

    def _raise_for_errors(self, errors: list[dict[str, Any]], endpoint: str) -> None:
        first = errors[0] if errors else {}
        message = first.get("message") or "Unknown GraphQL error"
        code = (first.get("extensions") or {}).get("code")
        if code == "RATELIMITED":
            self.rate_limiter.record_rate_limit(RATE_LIMIT_RETRY_AFTER)
            raise RateLimitedError(
                f"Linear rate limited: {message}",
                retry_after=RATE_LIMIT_RETRY_AFTER,
                endpoint=endpoint,
                code=code,
            )
        if code in ("AUTHENTICATION_ERROR", "FORBIDDEN"):
            raise ProviderAuthError(
                f"Linear authentication failed: {message}", endpoint=endpoint, code=code
            )
        raise ProviderAPIError(f"GraphQL error: {message}", endpoint=endpoint, code=code)

    def _raise_for_error_body(
        self, response: httpx.Response, endpoint: str, quota: RateLimitInfo | None
    ) -> None:
        data = safe_json(response)
        if isinstance(data, dict) and data.get("errors"):
            self._raise_for_errors(data["errors"], endpoint)

    async def _query(
        self,
        ctx: ImportContext,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async def attempt() -> dict[str, Any]:
            response, quota = await self._send(
                ctx,
                "POST",
                LINEAR_GRAPHQL_URL,
                endpoint=operation,
                json={"query": query, "variables": variables or {}},
            )
            data = safe_json(response)
            if not isinstance(data, dict):
                raise ProviderAPIError("Empty response from Linear", endpoint=operation)
            if data.get("errors"):
                self._raise_for_errors(data["errors"], operation)
            if not data.get("data"):
                raise ProviderAPIError("Empty response from Linear", endpoint=operation)
            self.rate_limiter.record_success(quota)
            return data["data"]

        return await self._retrying(ctx, operation, attempt)

    async def _paginate(
        self,
        ctx: ImportContext,
        operation: str,
        query: str,
        key: str,
        page_size: int,
    ) -> list[dict[str, Any]]:
        nodes: list[dict[str, Any]] = []
        after: str | None = None
        while True:
            data = await self._query(ctx, operation, query, {"first": page_size, "after": after})
            connection = data[key]
            nodes.extend(connection["nodes"])
            page_info = connection["pageInfo"]
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                return nodes
            after = page_info["endCursor"]

    async def _probe(self, ctx: ImportContext) -> None:
        await self._query(ctx, "organization", _ORGANIZATION_QUERY)

    async def fetch_workspace(self, ctx: ImportContext) -> WorkspaceMetadata:
        org = (await self._query(ctx, "organization", _ORGANIZATION_QUERY))["organization"]
        return WorkspaceMetadata(
            external_id=org["id"],
            name=org["name"],
            metadata={"url_key": org.get("urlKey")},
        )

    async def fetch_users(self, ctx: ImportContext) -> list[ExternalUser]:
        nodes = await self._paginate(ctx, "users", _USERS_QUERY, "users", USERS_PER_PAGE)
        return [
            ExternalUser(
                external_id=u["id"],
                display_name=u.get("displayName") or u.get("name") or "",
                email=u.get("email"),
                avatar_url=u.get("avatarUrl"),
                is_deleted=not u.get("active", True),
                metadata={"name": u.get("name"), "admin": bool(u.get("admin"))},
            )
            for u in nodes
        ]

    async def fetch_channels(self, ctx: ImportContext) -> list[ExternalChannel]:
        nodes = await self._paginate(ctx, "teams", _TEAMS_QUERY, "teams", USERS_PER_PAGE)
        wanted = set(ctx.config.items) if ctx.config.items else None
        return [
            ExternalChannel(
                external_id=t["id"],
                name=t["name"],
                kind="team",
                description=t.get("description"),
                created_at=_parse_datetime(t["createdAt"]) if t.get("createdAt") else None,
                metadata={"key": t.get("key"), "private": bool(t.get("private"))},
            )
            for t in nodes
            if wanted is None or t["id"] in wanted or t.get("key") in wanted
        ]

    def _issue_filter(self, ctx: ImportContext) -> dict[str, Any]:
        config = ctx.config
        issue_filter: dict[str, Any] = {}
        created: dict[str, str] = {}
        if config.date_from is not None:
            created["gte"] = config.date_from.isoformat()
        if config.date_to is not None:
            created["lte"] = config.date_to.isoformat()
        if created:
            issue_filter["createdAt"] = created
        if not config.include_completed:
            issue_filter["completedAt"] = {"null": True}
        return issue_filter

    async def fetch_messages_page(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        cursor: str | None = None,
    ) -> Page[ExternalMessage]:
        data = await self._query(ctx, "team.issues", _TEAM_ISSUES_QUERY, {
            "teamId": channel.external_id,
            "first": ITEMS_PER_PAGE,
            "after": cursor,
            "filter": self._issue_filter(ctx) or None,
            "includeArchived": ctx.config.include_archived,
        })
        team = data.get("team")
        if team is None:
            raise ProviderAPIError(
                f"Team not found: {channel.external_id}", endpoint="team.issues"
            )
        connection = team["issues"]
        issues = [self._to_issue(node, channel.external_id) for node in connection["nodes"]]
        page_info = connection["pageInfo"]
        has_more = bool(page_info.get("hasNextPage") and page_info.get("endCursor"))
        return Page(
            items=issues,
            next_cursor=page_info.get("endCursor") if has_more else None,
            has_more=has_more,
        )

    @staticmethod
    def _to_issue(node: dict[str, Any], team_id: str) -> ExternalMessage:
        state = node.get("state") or {}
        project = node.get("project") or {}
        return ExternalMessage(
            external_id=node["id"],
            body=issue_body(node["identifier"], node["title"], node.get("description")),
            author_external_id=(node.get("creator") or {}).get("id") or "unknown",
            timestamp=_parse_datetime(node["createdAt"]),
            channel_external_id=team_id,
            metadata={
                "identifier": node["identifier"],
                "number": node.get("number"),
                "title": node["title"],
                "priority": node.get("priority"),
                "url": node.get("url"),
                "state": state.get("name"),
                "state_type": state.get("type"),
                "assignee_id": (node.get("assignee") or {}).get("id"),
                "project_id": project.get("id"),
                "project_name": project.get("name"),
                "labels": [label["name"] for label in (node.get("labels") or {}).get("nodes", [])],
                "completed_at": node.get("completedAt"),
                "archived_at": node.get("archivedAt"),
                "updated_at": node.get("updatedAt"),
            },
        )

    async def fetch_replies(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        parent_external_id: str,
    ) -> list[ExternalMessage]:
        data = await self._query(ctx, "issue.comments", _ISSUE_COMMENTS_QUERY, {
            "issueId": parent_external_id,
            "first": COMMENTS_PER_ISSUE,
        })
        issue = data.get("issue")
        if issue is None:
            return []
        comments = [
            ExternalMessage(
                external_id=c["id"],
                body=c.get("body") or "",
                author_external_id=(c.get("user") or {}).get("id") or "unknown",
                timestamp=_parse_datetime(c["createdAt"]),
                channel_external_id=channel.external_id,
                parent_external_id=(c.get("parent") or {}).get("id") or parent_external_id,
                reply_count=0,
                metadata={"issue_id": parent_external_id},
            )
            for c in issue["comments"]["nodes"]
        ]
        return order_parents_first(comments)
