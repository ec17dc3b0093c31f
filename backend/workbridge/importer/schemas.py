"""Pydantic schemas for the imports API."""

from datetime import datetime

from pydantic import BaseModel, Field

from workbridge.models import ConnectionStatus, ImportConfig, ImportPlatform


class CreateConnectionRequest(BaseModel):
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


class ConnectionResponse(BaseModel):
    """A connection as callers see it: never carries tokens."""

    connection_id: str
    workspace_id: str
    member_id: str
    platform: ImportPlatform
    scope: str
    team_id: str | None
    team_name: str | None
    metadata: dict[str, str]
    status: ConnectionStatus
    expires_at: datetime | None
    connected_at: datetime
    last_used: datetime | None


class StartJobRequest(BaseModel):
    workspace_id: str
    member_id: str
    platform: ImportPlatform
    config: ImportConfig = Field(default_factory=ImportConfig)
