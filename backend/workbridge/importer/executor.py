"""Import executor: drives one provider through one run.

Phases run strictly forward:
  validating -> fetching-metadata -> fetching-users -> fetching-containers
  -> importing-containers -> importing-items -> summarizing

Failures in the first four phases abort the run. From then on failures
are captured per container or per item in ``ImportResult.errors`` /
``ImportResult.warnings`` and the run continues. Cancellation is polled
before each container and before each item batch (providers also poll
it before every outbound call) and always propagates.
"""

import asyncio
import time
from typing import Any

from workbridge.errors import ContainerNotMappedError, ImportCancelledError
from workbridge.importer.models import ExternalChannel, ExternalMessage, ExternalUser
from workbridge.models import ImportResult
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.idempotency import generate_key
from workbridge.pipeline.utils import chunked, format_duration
from workbridge.providers.base import ImportProvider

PHASES = (
    "validating",
    "fetching-metadata",
    "fetching-users",
    "fetching-containers",
    "importing-containers",
    "importing-items",
    "summarizing",
)


class ImportExecutor:
    """One executor instance per run. Owns the in-run id maps and the result."""

    def __init__(
        self,
        ctx: ImportContext,
        provider: ImportProvider,
        *,
        container_concurrency: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.ctx = ctx
        self.provider = provider
        self.container_concurrency = container_concurrency or provider.max_concurrent_containers
        self.batch_size = batch_size or provider.item_batch_size
        self.result = ImportResult()
        self.phase: str | None = None
        self.container_ids: dict[str, str] = {}
        self.item_ids: dict[str, str] = {}
        self.users: dict[str, ExternalUser] = {}
        self._member_matches: dict[str, str | None] = {}
        self._containers_done = 0
        self._items_seen = 0

    @property
    def _container_noun(self) -> str:
        return self.provider.container_label.rstrip("s")

    @property
    def _item_noun(self) -> str:
        return self.provider.item_label.rstrip("s")

    def _enter(self, phase: str) -> None:
        current = PHASES.index(self.phase) if self.phase is not None else -1
        target = PHASES.index(phase)
        if target < current:
            raise RuntimeError(f"Cannot move from {self.phase} back to {phase}")
        self.phase = phase

    async def run(self) -> ImportResult:
        """Execute the run. Returns the result; re-raises fatal errors."""
        started = time.monotonic()
        ctx = self.ctx
        provider = self.provider
        label = provider.container_label
        try:
            self._enter("validating")
            await ctx.update_progress(current_step=f"Validating {provider.platform} connection...")
            await provider.validate_connection(ctx)

            self._enter("fetching-metadata")
            await ctx.update_progress(current_step="Fetching workspace info...")
            workspace = await provider.fetch_workspace(ctx)
            await ctx.log("info", f"Importing from {provider.platform} workspace {workspace.name}", {
                "external_id": workspace.external_id,
            })

            self._enter("fetching-users")
            await ctx.update_progress(current_step="Fetching users...")
            users = await provider.fetch_users(ctx)
            self.users = {u.external_id: u for u in users}
            self.result.users_matched = len(users)
            await ctx.update_progress(users_imported=len(users))

            self._enter("fetching-containers")
            await ctx.update_progress(current_step=f"Fetching {label}...")
            channels = await provider.fetch_channels(ctx)

            if not channels:
                self._enter("summarizing")
                await ctx.update_progress(items_total=0, current_step=f"No {label} found")
                return self.result

            await ctx.update_progress(
                items_total=len(channels),
                current_step=f"Found {len(channels)} {label}",
            )

            self._enter("importing-containers")
            await ctx.update_progress(
                current_step=f"Importing {label} and {provider.item_label}..."
            )
            for group in chunked(channels, self.container_concurrency):
                outcomes = await asyncio.gather(
                    *(self._import_container(channel, len(channels)) for channel in group),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome

            self._enter("summarizing")
            await ctx.update_progress(
                current_step=f"Import completed in {format_duration(time.monotonic() - started)}"
            )
            await ctx.log("info", "Import completed", {
                "containers": len(self.result.items_created) + len(self.result.items_reused),
                "messages_created": self.result.messages_created,
                "errors": len(self.result.errors),
                "warnings": len(self.result.warnings),
            })
            return self.result
        except ImportCancelledError as e:
            self.result.errors.append(f"Import failed: {e}")
            await ctx.log("info", "Import cancelled", {"phase": self.phase})
            raise
        except Exception as e:
            self.result.errors.append(f"Import failed: {e}")
            await ctx.log("error", f"Import failed: {e}", {"phase": self.phase})
            raise

    async def _import_container(self, channel: ExternalChannel, total: int) -> None:
        await self.ctx.raise_if_cancelled()

        try:
            container_id = await self._store_container(channel)
        except ImportCancelledError:
            raise
        except Exception as e:
            message = f"Failed to store {self._container_noun} {channel.name}: {e}"
            self.result.errors.append(message)
            await self.ctx.log("error", message, {"external_id": channel.external_id})
        else:
            self._enter("importing-items")
            try:
                await self._import_items(channel)
            except ImportCancelledError:
                raise
            except Exception as e:
                message = f"Failed to process {self._container_noun} {channel.name}: {e}"
                self.result.errors.append(message)
                await self.ctx.log("error", message, {
                    "external_id": channel.external_id,
                    "container_id": container_id,
                })

        self._containers_done += 1
        await self.ctx.update_progress(
            items_imported=self._containers_done,
            current_step=f"Processed {self._containers_done}/{total} {self.provider.container_label}",
        )

    async def _store_container(self, channel: ExternalChannel) -> str:
        """Store-if-absent. Renames an existing container whose name changed."""
        ctx = self.ctx
        store = ctx.store
        existing = await store.lookup_container_by_external_id(ctx.workspace_id, channel.external_id)
        if existing is not None:
            if existing.name != channel.name:
                await store.rename_container(existing.id, channel.name)
            self.container_ids[channel.external_id] = existing.id
            self.result.items_reused.append(existing.id)
            return existing.id

        container_id = await store.upsert_container(
            workspace_id=ctx.workspace_id,
            owner_id=ctx.member_id,
            external_id=channel.external_id,
            idempotency_key=generate_key(
                self.provider.platform, ctx.workspace_id, channel.external_id, "channel"
            ),
            name=channel.name,
            kind=channel.kind,
            description=channel.description,
            metadata=channel.metadata,
        )
        self.container_ids[channel.external_id] = container_id
        self.result.items_created.append(container_id)
        return container_id

    async def _import_items(self, channel: ExternalChannel) -> None:
        cursor: str | None = None
        while True:
            page = await self.provider.fetch_messages_page(self.ctx, channel, cursor)
            self._items_seen += len(page.items)
            await self.ctx.update_progress(sub_items_total=self._items_seen)
            await self._store_items(channel, page.items)
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor

    async def _store_items(self, channel: ExternalChannel, messages: list[ExternalMessage]) -> None:
        for batch in chunked(messages, self.batch_size):
            await self.ctx.raise_if_cancelled()
            for message in batch:
                await self._store_item(channel, message)
            await self.ctx.update_progress(
                sub_items_imported=self.result.messages_created,
                current_step=(
                    f"Imported {self.result.messages_created} {self.provider.item_label}"
                ),
            )

    async def _store_item(self, channel: ExternalChannel, message: ExternalMessage) -> None:
        ctx = self.ctx
        try:
            existing = await ctx.store.lookup_item_by_external_id(
                ctx.workspace_id, message.external_id
            )
            if existing is not None:
                # Already imported by an earlier run, subtree included
                self.item_ids[message.external_id] = existing.id
                return

            parent_id = None
            if message.parent_external_id:
                parent_id = self.item_ids.get(message.parent_external_id)
                if parent_id is None:
                    warning = (
                        f"Parent {message.parent_external_id} not found for "
                        f"{self._item_noun} {message.external_id}; stored without thread link"
                    )
                    self.result.warnings.append(warning)
                    await ctx.log("warning", warning)

            container_id = self.container_ids.get(message.channel_external_id)
            if container_id is None:
                raise ContainerNotMappedError(
                    f"{self._container_noun.capitalize()} {message.channel_external_id} "
                    "not found in map"
                )

            author_id, metadata = await self._resolve_author(message)
            item_id = await ctx.store.upsert_item(
                workspace_id=ctx.workspace_id,
                owner_id=ctx.member_id,
                container_id=container_id,
                external_id=message.external_id,
                idempotency_key=generate_key(
                    self.provider.platform, ctx.workspace_id, message.external_id, "message"
                ),
                body=message.body,
                timestamp=message.timestamp,
                parent_id=parent_id,
                author_id=author_id,
                metadata=metadata,
            )
            self.item_ids[message.external_id] = item_id
            self.result.messages_created += 1
        except (ImportCancelledError, ContainerNotMappedError):
            raise
        except Exception as e:
            error = f"Failed to store {self._item_noun} {message.external_id}: {e}"
            self.result.errors.append(error)
            await ctx.log("error", error, {"container": channel.external_id})
            return

        if self._wants_replies(message):
            await self._import_replies(channel, message)

    def _wants_replies(self, message: ExternalMessage) -> bool:
        if not self.provider.supports_replies:
            return False
        if not getattr(self.ctx.config, self.provider.reply_config_flag, False):
            return False
        return message.reply_count is None or message.reply_count > 0

    async def _import_replies(self, channel: ExternalChannel, message: ExternalMessage) -> None:
        try:
            replies = await self.provider.fetch_replies(self.ctx, channel, message.external_id)
        except ImportCancelledError:
            raise
        except Exception as e:
            warning = f"Failed to fetch replies for {self._item_noun} {message.external_id}: {e}"
            self.result.warnings.append(warning)
            await self.ctx.log("warning", warning)
            return
        if replies:
            self._items_seen += len(replies)
            await self.ctx.update_progress(sub_items_total=self._items_seen)
            await self._store_items(channel, replies)

    async def _resolve_author(
        self, message: ExternalMessage
    ) -> tuple[str | None, dict[str, Any]]:
        metadata = dict(message.metadata)
        metadata["authorExternalId"] = message.author_external_id
        if message.attachments:
            metadata["attachments"] = [
                {
                    "external_id": a.external_id,
                    "name": a.name,
                    "mime_type": a.mime_type,
                    "size": a.size,
                }
                for a in message.attachments
            ]

        user = self.users.get(message.author_external_id)
        if user is None:
            return None, metadata
        metadata["authorName"] = user.display_name

        if user.external_id not in self._member_matches:
            self._member_matches[user.external_id] = await self.ctx.store.match_member(
                self.ctx.workspace_id, user
            )
        return self._member_matches[user.external_id], metadata


async def run_import(ctx: ImportContext, provider: ImportProvider) -> ImportResult:
    """Run one import to completion with the provider's default limits."""
    return await ImportExecutor(ctx, provider).run()
