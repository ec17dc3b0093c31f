"""Normalized representation of external entities.

Every provider maps its wire format onto these shapes; the executor only
ever sees them. They are transient: nothing here is persisted as-is.
Every entity carries an ``external_id`` that is stable across pages and
runs, which is what idempotency keys are derived from.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class ExternalUser:
    external_id: str
    display_name: str
    email: str | None = None
    avatar_url: str | None = None
    is_bot: bool = False
    is_deleted: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalChannel:
    """A container: channel, team or project."""

    external_id: str
    name: str
    kind: str  # "public" | "private" | "team" | "project" | "inbox" | ...
    description: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalAttachment:
    external_id: str
    name: str
    mime_type: str
    size: int
    url: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalMessage:
    """An item: message, issue, task, or a reply/comment under one."""

    external_id: str
    body: str
    author_external_id: str
    timestamp: datetime
    channel_external_id: str
    parent_external_id: str | None = None
    reply_count: int | None = None  # None = unknown, fetch to find out
    attachments: list[ExternalAttachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Page(Generic[T]):
    """One page of items plus where the next one starts."""

    items: list[T]
    next_cursor: str | None = None
    has_more: bool = False
