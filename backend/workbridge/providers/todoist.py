"""Todoist provider: plain REST v2, HTTP status only, flat arrays.

Projects are containers, tasks are items (sub-tasks link to their parent
task) and task comments are replies. The REST API returns every task of
a project at once, so a project is always a single page.
"""

from datetime import UTC, datetime
from typing import Any

from workbridge.errors import ImportCancelledError, ImportPipelineError, ProviderAPIError
from workbridge.importer.models import (
    ExternalChannel,
    ExternalMessage,
    ExternalUser,
    Page,
)
from workbridge.models import WorkspaceMetadata
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.utils import order_parents_first, safe_json
from workbridge.providers.base import HTTPImportProvider

TODOIST_REST_API = "https://api.todoist.com/rest/v2"
TODOIST_USER_URL = "https://api.todoist.com/sync/v9/user"


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _project_kind(project: dict[str, Any]) -> str:
    if project.get("is_inbox_project"):
        return "inbox"
    if project.get("parent_id"):
        return "sub_project"
    return "project"


class TodoistImportProvider(HTTPImportProvider):
    container_label = "projects"
    item_label = "tasks"
    reply_config_flag = "include_comments"
    supports_replies = True
    required_scopes = ("data:read",)

    min_delay = 0.1
    max_delay = 30.0
    default_retry_after = 60.0

    @property
    def platform(self) -> str:
        return "todoist"

    async def _get(
        self, ctx: ImportContext, endpoint: str, params: dict[str, str] | None = None
    ) -> Any:
        url = endpoint if endpoint.startswith("https://") else f"{TODOIST_REST_API}/{endpoint}"

        async def attempt() -> Any:
            response, quota = await self._send(
                ctx, "GET", url, endpoint=endpoint, params=params or {}
            )
            self.rate_limiter.record_success(quota)
            return safe_json(response)

        return await self._retrying(ctx, endpoint, attempt)

    async def _get_list(
        self, ctx: ImportContext, endpoint: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        data = await self._get(ctx, endpoint, params)
        if not isinstance(data, list):
            raise ProviderAPIError(f"Expected a list from {endpoint}", endpoint=endpoint)
        return data

    async def _probe(self, ctx: ImportContext) -> None:
        await self._get_list(ctx, "projects")

    async def _fetch_user(self, ctx: ImportContext) -> dict[str, Any]:
        data = await self._get(ctx, TODOIST_USER_URL)
        if not isinstance(data, dict) or "id" not in data:
            raise ProviderAPIError("Invalid user response", endpoint=TODOIST_USER_URL)
        return data

    async def fetch_workspace(self, ctx: ImportContext) -> WorkspaceMetadata:
        user = await self._fetch_user(ctx)
        metadata: dict[str, Any] = {
            "email": user.get("email"),
            "avatar": user.get("avatar_big") or user.get("avatar_medium"),
        }
        try:
            labels = await self._get_list(ctx, "labels")
        except ImportCancelledError:
            raise
        except ImportPipelineError as e:
            await ctx.log("warning", "Failed to fetch labels", {"error": str(e)})
            labels = []
        metadata["labels"] = {
            str(label["id"]): {"name": label["name"], "color": label.get("color")}
            for label in labels
        }
        return WorkspaceMetadata(
            external_id=str(user["id"]),
            name=f"{user.get('full_name') or user.get('email')}'s Todoist",
            metadata=metadata,
        )

    async def fetch_users(self, ctx: ImportContext) -> list[ExternalUser]:
        owner = await self._fetch_user(ctx)
        users = {
            str(owner["id"]): ExternalUser(
                external_id=str(owner["id"]),
                display_name=owner.get("full_name") or owner.get("email") or "",
                email=owner.get("email"),
                avatar_url=owner.get("avatar_big"),
                metadata={"owner": True},
            )
        }
        try:
            projects = await self._get_list(ctx, "projects")
            for project in projects:
                if not project.get("is_shared"):
                    continue
                collaborators = await self._get_list(
                    ctx, f"projects/{project['id']}/collaborators"
                )
                for person in collaborators:
                    users.setdefault(str(person["id"]), ExternalUser(
                        external_id=str(person["id"]),
                        display_name=person.get("name") or person.get("email") or "",
                        email=person.get("email"),
                    ))
        except ImportCancelledError:
            raise
        except ImportPipelineError as e:
            await ctx.log("warning", "Failed to fetch collaborators", {"error": str(e)})
        return list(users.values())

    async def fetch_channels(self, ctx: ImportContext) -> list[ExternalChannel]:
        projects = await self._get_list(ctx, "projects")
        wanted = set(ctx.config.items) if ctx.config.items else None
        return [
            ExternalChannel(
                external_id=str(p["id"]),
                name=p["name"],
                kind=_project_kind(p),
                metadata={
                    "color": p.get("color"),
                    "is_favorite": bool(p.get("is_favorite")),
                    "is_inbox": bool(p.get("is_inbox_project")),
                    "is_shared": bool(p.get("is_shared")),
                    "parent_id": p.get("parent_id"),
                    "order": p.get("order"),
                    "view_style": p.get("view_style"),
                },
            )
            for p in projects
            if wanted is None or str(p["id"]) in wanted
        ]

    def _in_range(self, ctx: ImportContext, created: datetime | None) -> bool:
        if created is None:
            return True
        if ctx.config.date_from is not None and created < _as_utc(ctx.config.date_from):
            return False
        if ctx.config.date_to is not None and created > _as_utc(ctx.config.date_to):
            return False
        return True

    async def fetch_messages_page(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        cursor: str | None = None,
    ) -> Page[ExternalMessage]:
        tasks = await self._get_list(ctx, "tasks", {"project_id": channel.external_id})
        items = []
        for task in tasks:
            if task.get("is_completed") and not ctx.config.include_completed:
                continue
            created = _parse_datetime(task.get("created_at"))
            if not self._in_range(ctx, created):
                continue
            items.append(self._to_task(task, channel.external_id, created))
        return Page(items=order_parents_first(items), next_cursor=None, has_more=False)

    @staticmethod
    def _to_task(
        task: dict[str, Any], project_id: str, created: datetime | None
    ) -> ExternalMessage:
        body = task.get("content") or ""
        if task.get("description"):
            body += f"\n\n{task['description']}"
        parent_id = task.get("parent_id")
        return ExternalMessage(
            external_id=str(task["id"]),
            body=body,
            author_external_id=str(task.get("creator_id") or "unknown"),
            timestamp=created or datetime.now(UTC),
            channel_external_id=project_id,
            parent_external_id=str(parent_id) if parent_id else None,
            reply_count=task.get("comment_count"),
            metadata={
                "priority": task.get("priority"),
                "due": task.get("due"),
                "labels": task.get("labels") or [],
                "is_completed": bool(task.get("is_completed")),
                "section_id": task.get("section_id"),
                "assignee_id": task.get("assignee_id"),
                "url": task.get("url"),
                "order": task.get("order"),
            },
        )

    async def fetch_replies(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        parent_external_id: str,
    ) -> list[ExternalMessage]:
        comments = await self._get_list(ctx, "comments", {"task_id": parent_external_id})
        return [
            ExternalMessage(
                external_id=str(c["id"]),
                body=c.get("content") or "",
                author_external_id=str(c.get("posted_uid") or "unknown"),
                timestamp=_parse_datetime(c.get("posted_at")) or datetime.now(UTC),
                channel_external_id=channel.external_id,
                parent_external_id=parent_external_id,
                reply_count=0,
                metadata={"attachment": c.get("attachment")},
            )
            for c in comments
        ]
