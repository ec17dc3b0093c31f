"""Canonical data structures for import runs.

Defined once here, referenced everywhere else. Connection and job records
mirror the persisted rows; config, progress and result are the structured
fields a caller reads while and after a run executes.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ImportPlatform = Literal["slack", "todoist", "linear", "notion", "miro", "clickup"]
EntityKind = Literal["user", "channel", "message", "file"]
ImportJobStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
ConnectionStatus = Literal["active", "expired", "revoked", "error"]

PLATFORMS: tuple[str, ...] = ("slack", "todoist", "linear", "notion", "miro", "clickup")
ENTITY_KINDS: tuple[str, ...] = ("user", "channel", "message", "file")
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# ---------------------------------------------------------------------------
# Run configuration, progress and result
# ---------------------------------------------------------------------------


class ImportConfig(BaseModel):
    items: list[str] | None = None  # container external ids to restrict to
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_files: bool = False
    include_threads: bool = False
    include_completed: bool = False
    include_comments: bool = False
    include_archived: bool = False
    platform_config: dict[str, Any] = Field(default_factory=dict)


class ImportProgress(BaseModel):
    items_imported: int = 0  # containers
    items_total: int = 0
    sub_items_imported: int = 0  # messages / issues / tasks
    sub_items_total: int = 0
    users_imported: int = 0
    files_imported: int = 0
    current_step: str = "Initializing import..."
    platform_data: dict[str, Any] = Field(default_factory=dict)


class ImportResult(BaseModel):
    items_created: list[str] = Field(default_factory=list)  # new container ids
    items_reused: list[str] = Field(default_factory=list)  # already-stored container ids
    messages_created: int = 0
    users_matched: int = 0
    files_imported: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    platform_data: dict[str, Any] = Field(default_factory=dict)


class RateLimitInfo(BaseModel):
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: float | None = None


class WorkspaceMetadata(BaseModel):
    external_id: str
    name: str
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class ImportConnection(BaseModel):
    connection_id: str
    workspace_id: str
    member_id: str
    platform: ImportPlatform
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str = ""
    team_id: str | None = None
    team_name: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    status: ConnectionStatus = "active"
    connected_at: datetime
    last_used: datetime | None = None


class ImportJob(BaseModel):
    job_id: str
    workspace_id: str
    member_id: str
    connection_id: str
    platform: ImportPlatform
    status: ImportJobStatus = "pending"
    config: ImportConfig = Field(default_factory=ImportConfig)
    progress: ImportProgress = Field(default_factory=ImportProgress)
    result: ImportResult | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
