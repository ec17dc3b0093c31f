"""Slack provider: form-encoded Web API with cursor pagination.

Every response is HTTP 200 with an ``ok`` flag; the error string in the
body is what distinguishes rate limiting from auth failures.
"""

from datetime import UTC, datetime
from typing import Any

from workbridge.errors import (
    ConnectionInvalidError,
    ProviderAPIError,
    ProviderAuthError,
    RateLimitedError,
)
from workbridge.importer.models import (
    ExternalAttachment,
    ExternalChannel,
    ExternalMessage,
    ExternalUser,
    Page,
)
from workbridge.models import WorkspaceMetadata
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.utils import safe_json
from workbridge.providers.base import HTTPImportProvider

SLACK_API = "https://slack.com/api"

USERS_PER_PAGE = 100
CHANNELS_PER_PAGE = 100
MESSAGES_PER_PAGE = 100

_SKIPPED_SUBTYPES = frozenset({
    "channel_join",
    "channel_leave",
    "channel_archive",
    "channel_unarchive",
    "channel_topic",
    "channel_purpose",
    "channel_name",
})

_AUTH_ERRORS = frozenset({"invalid_auth", "auth_expired", "account_inactive", "token_revoked"})


def _ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=UTC)


def message_external_id(channel_id: str, ts: str) -> str:
    """Slack ts values are only unique within a channel."""
    return f"{channel_id}.{ts}"


class SlackImportProvider(HTTPImportProvider):
    container_label = "channels"
    item_label = "messages"
    reply_config_flag = "include_threads"
    supports_replies = True
    required_scopes = ("channels:read", "channels:history", "users:read", "team:read")

    min_delay = 0.2
    max_delay = 60.0

    @property
    def platform(self) -> str:
        return "slack"

    async def _call(
        self, ctx: ImportContext, endpoint: str, params: dict[str, str] | None = None
    ) -> dict[str, Any]:
        params = params or {}

        async def attempt() -> dict[str, Any]:
            response, quota = await self._send(
                ctx,
                "POST",
                f"{SLACK_API}/{endpoint}",
                endpoint=endpoint,
                data=params,
            )
            data = safe_json(response)
            if not isinstance(data, dict):
                raise ProviderAPIError("Empty response from Slack API", endpoint=endpoint)
            if not data.get("ok"):
                self._raise_for_body(data, endpoint, params)
            self.rate_limiter.record_success(quota)
            return data

        return await self._retrying(ctx, endpoint, attempt)

    def _raise_for_body(
        self, data: dict[str, Any], endpoint: str, params: dict[str, str]
    ) -> None:
        error = data.get("error") or "Unknown Slack error"
        if error in ("ratelimited", "rate_limited"):
            retry_after = float(data.get("retry_after") or 10)
            self.rate_limiter.record_rate_limit(retry_after)
            raise RateLimitedError(
                f"Slack rate limited: {error}",
                retry_after=retry_after,
                endpoint=endpoint,
                code=error,
            )
        if error in _AUTH_ERRORS:
            raise ProviderAuthError(
                f"Slack authentication failed: {error}", endpoint=endpoint, code=error
            )
        if error in ("not_allowed", "missing_scope"):
            raise ProviderAuthError(
                "Missing required Slack scopes", endpoint=endpoint, code=error
            )
        if error == "channel_not_found":
            raise ProviderAPIError(
                f"Channel not found: {params.get('channel')}", endpoint=endpoint, code=error
            )
        raise ProviderAPIError(f"Slack API error: {error}", endpoint=endpoint, code=error)

    async def _probe(self, ctx: ImportContext) -> None:
        data = await self._call(ctx, "team.info")
        if not (data.get("team") or {}).get("id"):
            raise ConnectionInvalidError("Invalid team info response")

    async def fetch_workspace(self, ctx: ImportContext) -> WorkspaceMetadata:
        team = (await self._call(ctx, "team.info"))["team"]
        return WorkspaceMetadata(
            external_id=team["id"],
            name=team["name"],
            metadata={
                "domain": team.get("domain"),
                "email_domain": team.get("email_domain"),
                "icon": team.get("icon"),
            },
        )

    async def _paginate(
        self, ctx: ImportContext, endpoint: str, key: str, params: dict[str, str]
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            data = await self._call(ctx, endpoint, page_params)
            if key not in data:
                raise ProviderAPIError(f"No {key} in response", endpoint=endpoint)
            results.extend(data[key])
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return results

    async def fetch_users(self, ctx: ImportContext) -> list[ExternalUser]:
        members = await self._paginate(
            ctx, "users.list", "members", {"limit": str(USERS_PER_PAGE)}
        )
        users = []
        for user in members:
            if user.get("deleted"):
                continue
            profile = user.get("profile") or {}
            users.append(ExternalUser(
                external_id=user["id"],
                display_name=(
                    profile.get("display_name") or user.get("real_name") or user.get("name", "")
                ),
                email=profile.get("email"),
                avatar_url=profile.get("image_192") or profile.get("image_72"),
                is_bot=bool(user.get("is_bot")),
                metadata={
                    "real_name": user.get("real_name"),
                    "title": profile.get("title"),
                    "is_admin": bool(user.get("is_admin")),
                    "is_owner": bool(user.get("is_owner")),
                    "timezone": user.get("tz"),
                },
            ))
        return users

    async def fetch_channels(self, ctx: ImportContext) -> list[ExternalChannel]:
        params = {"limit": str(CHANNELS_PER_PAGE)}
        if not ctx.config.include_archived:
            params["exclude_archived"] = "true"
        raw = await self._paginate(ctx, "conversations.list", "channels", params)

        wanted = set(ctx.config.items) if ctx.config.items else None
        channels = []
        for ch in raw:
            if wanted is not None and ch["id"] not in wanted:
                continue
            topic = (ch.get("topic") or {}).get("value") or None
            purpose = (ch.get("purpose") or {}).get("value") or None
            created = ch.get("created")
            channels.append(ExternalChannel(
                external_id=ch["id"],
                name=ch["name"],
                kind="private" if ch.get("is_private") else "public",
                description=topic or purpose,
                created_at=datetime.fromtimestamp(created, tz=UTC) if created else None,
                metadata={
                    "is_general": bool(ch.get("is_general")),
                    "is_archived": bool(ch.get("is_archived")),
                    "is_shared": bool(ch.get("is_shared")),
                    "topic": topic,
                    "purpose": purpose,
                    "previous_names": ch.get("previous_names"),
                },
            ))
        return channels

    def _to_message(
        self, msg: dict[str, Any], channel_id: str, parent_ts: str | None
    ) -> ExternalMessage:
        ts = msg["ts"]
        return ExternalMessage(
            external_id=message_external_id(channel_id, ts),
            body=msg.get("text") or "",
            author_external_id=msg.get("user") or msg.get("bot_id") or "unknown",
            timestamp=_ts_to_datetime(ts),
            channel_external_id=channel_id,
            parent_external_id=(
                message_external_id(channel_id, parent_ts) if parent_ts else None
            ),
            reply_count=msg.get("reply_count", 0) if parent_ts is None else 0,
            attachments=[self._to_attachment(f) for f in msg.get("files") or []],
            metadata={
                "ts": ts,
                "bot_id": msg.get("bot_id"),
                "subtype": msg.get("subtype"),
                "thread_ts": msg.get("thread_ts"),
                "reactions": [
                    {"name": r["name"], "count": r.get("count", 0)}
                    for r in msg.get("reactions") or []
                ],
            },
        )

    @staticmethod
    def _to_attachment(file: dict[str, Any]) -> ExternalAttachment:
        return ExternalAttachment(
            external_id=file["id"],
            name=file.get("name") or file.get("title") or "untitled",
            mime_type=file.get("mimetype") or "application/octet-stream",
            size=file.get("size") or 0,
            url=file.get("url_private_download") or file.get("url_private") or "",
            metadata={
                "filetype": file.get("filetype"),
                "pretty_type": file.get("pretty_type"),
                "is_external": file.get("is_external"),
            },
        )

    async def fetch_messages_page(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        cursor: str | None = None,
    ) -> Page[ExternalMessage]:
        params = {
            "channel": channel.external_id,
            "limit": str(MESSAGES_PER_PAGE),
            "inclusive": "true",
        }
        if ctx.config.date_from is not None:
            params["oldest"] = str(int(ctx.config.date_from.timestamp()))
        if ctx.config.date_to is not None:
            params["latest"] = str(int(ctx.config.date_to.timestamp() + 0.999))
        if cursor:
            params["cursor"] = cursor

        data = await self._call(ctx, "conversations.history", params)
        if "messages" not in data:
            raise ProviderAPIError("No messages in response", endpoint="conversations.history")

        messages = []
        for msg in data["messages"]:
            if msg.get("subtype") in _SKIPPED_SUBTYPES:
                continue
            if not msg.get("text") and not msg.get("files"):
                continue
            thread_ts = msg.get("thread_ts")
            parent_ts = thread_ts if thread_ts and thread_ts != msg["ts"] else None
            messages.append(self._to_message(msg, channel.external_id, parent_ts))

        # History is newest-first; store oldest-first so threads resolve
        messages.reverse()
        next_cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
        return Page(
            items=messages,
            next_cursor=next_cursor,
            has_more=bool(data.get("has_more")) and next_cursor is not None,
        )

    async def fetch_replies(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        parent_external_id: str,
    ) -> list[ExternalMessage]:
        _, thread_ts = parent_external_id.split(".", 1)
        data = await self._call(ctx, "conversations.replies", {
            "channel": channel.external_id,
            "ts": thread_ts,
            "limit": str(MESSAGES_PER_PAGE),
        })
        # The first element is the parent itself
        return [
            self._to_message(msg, channel.external_id, thread_ts)
            for msg in (data.get("messages") or [])[1:]
        ]

    async def download_attachment(
        self, ctx: ImportContext, attachment: ExternalAttachment
    ) -> bytes:
        if not attachment.url:
            raise ProviderAPIError("No download URL for attachment", endpoint="files")

        async def attempt() -> bytes:
            response, quota = await self._send(ctx, "GET", attachment.url, endpoint="files")
            self.rate_limiter.record_success(quota)
            return response.content

        return await self._retrying(ctx, "files", attempt)
