"""Shared test helpers: in-memory store, scripted provider, context builders."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from workbridge.errors import ConnectionInvalidError, UnsupportedOperationError
from workbridge.importer.models import (
    ExternalChannel,
    ExternalMessage,
    ExternalUser,
    Page,
)
from workbridge.importer.store import ImportStore, StoredContainer, StoredItem
from workbridge.models import ImportConfig, ImportProgress, WorkspaceMetadata
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.rate_limit import RateLimiter
from workbridge.pipeline.retry import RetryPolicy
from workbridge.providers.base import ImportProvider

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class InMemoryStore(ImportStore):
    """ImportStore over plain dicts. Records every write for assertions."""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.items: dict[str, dict[str, Any]] = {}
        self.renames: list[tuple[str, str]] = []
        self.members: dict[str, str] = {}  # email -> member id
        self.fail_items: set[str] = set()
        self.fail_containers: set[str] = set()

    async def lookup_container_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredContainer | None:
        for internal_id, row in self.containers.items():
            if row["workspace_id"] == workspace_id and row["external_id"] == external_id:
                return StoredContainer(id=internal_id, name=row["name"], metadata=row["metadata"])
        return None

    async def upsert_container(self, **fields: Any) -> str:
        if fields["external_id"] in self.fail_containers:
            raise RuntimeError("container write rejected")
        for internal_id, row in self.containers.items():
            if row["idempotency_key"] == fields["idempotency_key"]:
                return internal_id
        internal_id = f"{fields['external_id']}-internal"
        self.containers[internal_id] = dict(fields)
        return internal_id

    async def rename_container(self, internal_id: str, name: str) -> None:
        self.containers[internal_id]["name"] = name
        self.renames.append((internal_id, name))

    async def lookup_item_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredItem | None:
        for internal_id, row in self.items.items():
            if row["workspace_id"] == workspace_id and row["external_id"] == external_id:
                return StoredItem(
                    id=internal_id,
                    container_id=row["container_id"],
                    parent_id=row["parent_id"],
                )
        return None

    async def upsert_item(self, **fields: Any) -> str:
        if fields["external_id"] in self.fail_items:
            raise RuntimeError("item write rejected")
        for internal_id, row in self.items.items():
            if row["idempotency_key"] == fields["idempotency_key"]:
                return internal_id
        internal_id = f"{fields['external_id']}-internal"
        fields.setdefault("parent_id", None)
        fields.setdefault("author_id", None)
        self.items[internal_id] = dict(fields)
        return internal_id

    async def match_member(self, workspace_id: str, user: ExternalUser) -> str | None:
        return self.members.get(user.email or "")


def make_channel(external_id: str = "C1", name: str | None = None, **kw: Any) -> ExternalChannel:
    return ExternalChannel(external_id=external_id, name=name or external_id.lower(), kind="public", **kw)


def make_message(
    external_id: str,
    channel: str = "C1",
    parent: str | None = None,
    author: str = "U1",
    minutes: int = 0,
    reply_count: int | None = 0,
    **kw: Any,
) -> ExternalMessage:
    return ExternalMessage(
        external_id=external_id,
        body=f"body of {external_id}",
        author_external_id=author,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        channel_external_id=channel,
        parent_external_id=parent,
        reply_count=reply_count,
        **kw,
    )


class FakeProvider(ImportProvider):
    """Scripted provider: containers, pages per container, replies per item."""

    container_label = "channels"
    item_label = "messages"
    reply_config_flag = "include_threads"
    supports_replies = True

    def __init__(
        self,
        channels: list[ExternalChannel] | None = None,
        pages: dict[str, list[list[ExternalMessage]]] | None = None,
        replies: dict[str, list[ExternalMessage]] | None = None,
        users: list[ExternalUser] | None = None,
    ) -> None:
        self.channels = channels if channels is not None else []
        self.pages = pages or {}
        self.replies = replies or {}
        self.users = users or []
        self.calls: list[tuple[str, str | None]] = []
        self.fail_validation: Exception | None = None
        self.fail_replies: set[str] = set()
        self.fail_pages: dict[str, Exception] = {}
        self.closed = False

    @property
    def platform(self) -> str:
        return "slack"

    async def validate_connection(self, ctx: ImportContext) -> None:
        self.calls.append(("validate", None))
        if self.fail_validation is not None:
            raise ConnectionInvalidError(
                f"Failed to validate slack connection: {self.fail_validation}"
            ) from self.fail_validation

    async def fetch_workspace(self, ctx: ImportContext) -> WorkspaceMetadata:
        self.calls.append(("workspace", None))
        return WorkspaceMetadata(external_id="T1", name="Test Workspace")

    async def fetch_users(self, ctx: ImportContext) -> list[ExternalUser]:
        self.calls.append(("users", None))
        return list(self.users)

    async def fetch_channels(self, ctx: ImportContext) -> list[ExternalChannel]:
        self.calls.append(("channels", None))
        return list(self.channels)

    async def fetch_messages_page(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        cursor: str | None = None,
    ) -> Page[ExternalMessage]:
        self.calls.append(("page", f"{channel.external_id}:{cursor}"))
        if channel.external_id in self.fail_pages:
            raise self.fail_pages[channel.external_id]
        pages = self.pages.get(channel.external_id, [[]])
        index = int(cursor) if cursor else 0
        has_more = index + 1 < len(pages)
        return Page(
            items=list(pages[index]),
            next_cursor=str(index + 1) if has_more else None,
            has_more=has_more,
        )

    async def fetch_replies(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        parent_external_id: str,
    ) -> list[ExternalMessage]:
        self.calls.append(("replies", parent_external_id))
        if parent_external_id in self.fail_replies:
            raise RuntimeError("thread unavailable")
        if parent_external_id not in self.replies:
            raise UnsupportedOperationError("no replies scripted")
        return list(self.replies[parent_external_id])

    async def aclose(self) -> None:
        self.closed = True


def make_context(
    store: ImportStore | None = None,
    config: ImportConfig | None = None,
    **kw: Any,
) -> ImportContext:
    return ImportContext(
        workspace_id=kw.pop("workspace_id", "ws-1"),
        member_id=kw.pop("member_id", "member-1"),
        access_token=kw.pop("access_token", "xoxb-test"),
        store=store if store is not None else InMemoryStore(),
        config=config or ImportConfig(),
        **kw,
    )


class ProgressRecorder:
    """on_progress sink that keeps every published snapshot."""

    def __init__(self) -> None:
        self.snapshots: list[ImportProgress] = []

    async def __call__(self, progress: ImportProgress) -> None:
        self.snapshots.append(progress)


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def fast_limiter() -> RateLimiter:
    return RateLimiter(min_delay=0.0, max_delay=60.0, sleep=FakeSleep())


FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.01, max_delay=0.05)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))