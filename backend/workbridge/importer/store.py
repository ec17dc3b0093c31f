"""Persistence operations the import core consumes.

The executor only talks to ``ImportStore``. Implementations must make
``upsert_container``/``upsert_item`` safe to call concurrently with the
same idempotency key; the SQLite store relies on a UNIQUE constraint.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from workbridge.db.connection import Database
from workbridge.importer.models import ExternalUser
from workbridge.utils.json import dump_json, parse_json_field


@dataclass
class StoredContainer:
    id: str
    name: str
    metadata: dict[str, Any]


@dataclass
class StoredItem:
    id: str
    container_id: str
    parent_id: str | None = None


class ImportStore(ABC):
    """Read/write operations against the product's own store."""

    @abstractmethod
    async def lookup_container_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredContainer | None: ...

    @abstractmethod
    async def upsert_container(
        self,
        *,
        workspace_id: str,
        owner_id: str,
        external_id: str,
        idempotency_key: str,
        name: str,
        kind: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Insert the container unless its key exists. Returns the internal id."""
        ...

    @abstractmethod
    async def rename_container(self, internal_id: str, name: str) -> None: ...

    @abstractmethod
    async def lookup_item_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredItem | None: ...

    @abstractmethod
    async def upsert_item(
        self,
        *,
        workspace_id: str,
        owner_id: str,
        container_id: str,
        external_id: str,
        idempotency_key: str,
        body: str,
        timestamp: datetime,
        parent_id: str | None = None,
        author_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Insert the item unless its key exists. Returns the internal id."""
        ...

    async def match_member(self, workspace_id: str, user: ExternalUser) -> str | None:
        """Resolve an external user to a workspace member. Default: no match."""
        return None


class SqliteImportStore(ImportStore):
    """ImportStore over the channels/messages/members tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def lookup_container_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredContainer | None:
        row = await self._db.fetchone(
            "SELECT channel_id, name, metadata FROM channels"
            " WHERE workspace_id = ? AND external_id = ?",
            (workspace_id, external_id),
        )
        if row is None:
            return None
        return StoredContainer(
            id=row["channel_id"],
            name=row["name"],
            metadata=parse_json_field(row["metadata"]) or {},
        )

    async def upsert_container(
        self,
        *,
        workspace_id: str,
        owner_id: str,
        external_id: str,
        idempotency_key: str,
        name: str,
        kind: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        await self._db.execute(
            """
            INSERT INTO channels
                (channel_id, workspace_id, created_by, name, kind, description,
                 external_id, idempotency_key, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING
            """,
            (
                str(uuid4()),
                workspace_id,
                owner_id,
                name,
                kind,
                description,
                external_id,
                idempotency_key,
                dump_json(metadata),
                datetime.now(UTC).isoformat(),
            ),
        )
        internal_id = await self._db.fetchval(
            "SELECT channel_id FROM channels WHERE idempotency_key = ?",
            (idempotency_key,),
        )
        assert internal_id is not None
        return internal_id

    async def rename_container(self, internal_id: str, name: str) -> None:
        await self._db.execute(
            "UPDATE channels SET name = ? WHERE channel_id = ?",
            (name, internal_id),
        )

    async def lookup_item_by_external_id(
        self, workspace_id: str, external_id: str
    ) -> StoredItem | None:
        row = await self._db.fetchone(
            "SELECT message_id, channel_id, parent_message_id FROM messages"
            " WHERE workspace_id = ? AND external_id = ?",
            (workspace_id, external_id),
        )
        if row is None:
            return None
        return StoredItem(
            id=row["message_id"],
            container_id=row["channel_id"],
            parent_id=row["parent_message_id"],
        )

    async def upsert_item(
        self,
        *,
        workspace_id: str,
        owner_id: str,
        container_id: str,
        external_id: str,
        idempotency_key: str,
        body: str,
        timestamp: datetime,
        parent_id: str | None = None,
        author_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        await self._db.execute(
            """
            INSERT INTO messages
                (message_id, workspace_id, channel_id, member_id, author_member_id,
                 parent_message_id, body, external_id, idempotency_key, metadata,
                 created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING
            """,
            (
                str(uuid4()),
                workspace_id,
                container_id,
                owner_id,
                author_id,
                parent_id,
                body,
                external_id,
                idempotency_key,
                dump_json(metadata),
                timestamp.isoformat(),
            ),
        )
        internal_id = await self._db.fetchval(
            "SELECT message_id FROM messages WHERE idempotency_key = ?",
            (idempotency_key,),
        )
        assert internal_id is not None
        return internal_id

    async def match_member(self, workspace_id: str, user: ExternalUser) -> str | None:
        """Match by email, case-insensitively."""
        if not user.email:
            return None
        return await self._db.fetchval(
            "SELECT member_id FROM members WHERE workspace_id = ? AND lower(email) = lower(?)",
            (workspace_id, user.email),
        )
