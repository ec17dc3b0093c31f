"""JobService: import connections and jobs, plus running one job.

A job moves pending -> in_progress -> {completed | failed | cancelled}.
Terminal states are final: every status write is guarded on the job still
being pending or in progress, so a cancel that lands mid-run wins over
the run's own outcome.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

import aiosqlite

from workbridge.db.connection import Database
from workbridge.errors import ConnectionInvalidError, ImportCancelledError, ProviderAuthError
from workbridge.importer.executor import ImportExecutor
from workbridge.importer.schemas import ConnectionResponse
from workbridge.importer.store import ImportStore, SqliteImportStore
from workbridge.models import (
    ImportConfig,
    ImportConnection,
    ImportJob,
    ImportProgress,
    ImportResult,
)
from workbridge.pipeline.context import ImportContext
from workbridge.providers.base import ImportProvider
from workbridge.providers.registry import create_provider, list_platforms
from workbridge.utils.json import dump_json, parse_json_field

logger = logging.getLogger(__name__)

_ACTIVE = ("pending", "in_progress")


class JobNotFoundError(Exception):
    pass


class ConnectionNotFoundError(Exception):
    pass


class JobStateError(Exception):
    """The job is not in a state that allows the requested transition."""


class ConnectionUnavailableError(Exception):
    """No active connection or no registered provider for the member and platform."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


class JobService:
    def __init__(
        self,
        db: Database,
        *,
        store: ImportStore | None = None,
        provider_factory: Callable[[str], ImportProvider] = create_provider,
        platforms: Callable[[], list[str]] | None = None,
        run_timeout: float | None = None,
    ) -> None:
        self._db = db
        self._store = store or SqliteImportStore(db)
        self._provider_factory = provider_factory
        # A custom factory without a platform list accepts any platform
        if platforms is None and provider_factory is create_provider:
            platforms = list_platforms
        self._platforms = platforms
        self.run_timeout = run_timeout

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def create_connection(
        self,
        workspace_id: str,
        member_id: str,
        platform: str,
        access_token: str,
        *,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        scope: str = "",
        team_id: str | None = None,
        team_name: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ConnectionResponse:
        """Record a freshly authorized connection as active."""
        connection_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO import_connections
                (connection_id, workspace_id, member_id, platform, access_token,
                 refresh_token, expires_at, scope, team_id, team_name, metadata,
                 status, connected_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
            """,
            (
                connection_id,
                workspace_id,
                member_id,
                platform,
                access_token,
                refresh_token,
                expires_at.isoformat() if expires_at else None,
                scope,
                team_id,
                team_name,
                dump_json(metadata),
                _now(),
            ),
        )
        return self._to_response(await self._load_connection(connection_id))

    async def list_connections(self, workspace_id: str) -> list[ConnectionResponse]:
        rows = await self._db.fetchall(
            "SELECT * FROM import_connections WHERE workspace_id = ? ORDER BY connected_at DESC",
            (workspace_id,),
        )
        return [self._to_response(self._row_to_connection(r)) for r in rows]

    async def disconnect_connection(self, connection_id: str) -> ConnectionResponse:
        await self._load_connection(connection_id)
        await self._db.execute(
            "UPDATE import_connections SET status = 'revoked' WHERE connection_id = ?",
            (connection_id,),
        )
        return self._to_response(await self._load_connection(connection_id))

    async def _load_connection(self, connection_id: str) -> ImportConnection:
        row = await self._db.fetchone(
            "SELECT * FROM import_connections WHERE connection_id = ?",
            (connection_id,),
        )
        if row is None:
            raise ConnectionNotFoundError(f"Connection '{connection_id}' not found")
        return self._row_to_connection(row)

    async def _find_active_connection(
        self, workspace_id: str, member_id: str, platform: str
    ) -> ImportConnection | None:
        row = await self._db.fetchone(
            """
            SELECT * FROM import_connections
            WHERE workspace_id = ? AND member_id = ? AND platform = ? AND status = 'active'
            ORDER BY connected_at DESC
            LIMIT 1
            """,
            (workspace_id, member_id, platform),
        )
        return self._row_to_connection(row) if row is not None else None

    async def _set_connection_status(self, connection_id: str, status: str) -> None:
        await self._db.execute(
            "UPDATE import_connections SET status = ? WHERE connection_id = ?",
            (status, connection_id),
        )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def start_job(
        self,
        workspace_id: str,
        member_id: str,
        platform: str,
        config: ImportConfig | None = None,
    ) -> ImportJob:
        """Create a pending job against the member's active connection."""
        if self._platforms is not None and platform not in self._platforms():
            raise ConnectionUnavailableError(f"No import provider available for {platform}")
        connection = await self._find_active_connection(workspace_id, member_id, platform)
        if connection is None:
            raise ConnectionUnavailableError(
                f"No active {platform} connection for member '{member_id}'"
            )
        job_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO import_jobs
                (job_id, workspace_id, member_id, connection_id, platform, status,
                 config, progress, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (
                job_id,
                workspace_id,
                member_id,
                connection.connection_id,
                platform,
                (config or ImportConfig()).model_dump_json(),
                ImportProgress().model_dump_json(),
                _now(),
            ),
        )
        logger.info("Created %s import job %s", platform, job_id)
        return await self.get_job(job_id)

    async def get_job(self, job_id: str) -> ImportJob:
        row = await self._db.fetchone("SELECT * FROM import_jobs WHERE job_id = ?", (job_id,))
        if row is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        return self._row_to_job(row)

    async def list_jobs(self, workspace_id: str, limit: int | None = None) -> list[ImportJob]:
        """Jobs for a workspace, newest first."""
        sql = "SELECT * FROM import_jobs WHERE workspace_id = ? ORDER BY created_at DESC"
        params: tuple = (workspace_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (workspace_id, limit)
        rows = await self._db.fetchall(sql, params)
        return [self._row_to_job(r) for r in rows]

    async def cancel_job(self, job_id: str) -> ImportJob:
        """Request cancellation. The run observes it at its next checkpoint."""
        job = await self.get_job(job_id)
        if not await self._transition(job_id, "cancelled", error_message="Import cancelled"):
            raise JobStateError(f"Cannot cancel job in status '{job.status}'")
        logger.info("Cancelled import job %s", job_id)
        return await self.get_job(job_id)

    async def run_job(self, job_id: str) -> ImportJob:
        """Run a pending job to a terminal state and return it."""
        job = await self.get_job(job_id)
        started = await self._db.update(
            "UPDATE import_jobs SET status = 'in_progress', started_at = ?"
            " WHERE job_id = ? AND status = 'pending'",
            (_now(), job_id),
        )
        if not started:
            raise JobStateError(f"Cannot run job in status '{job.status}'")

        try:
            connection = await self._load_connection(job.connection_id)
            provider = self._provider_factory(job.platform)
        except Exception as e:
            logger.exception("Could not set up import job %s", job_id)
            await self._transition(job_id, "failed", error_message=f"Import setup failed: {e}")
            return await self.get_job(job_id)

        ctx = ImportContext(
            workspace_id=job.workspace_id,
            member_id=job.member_id,
            access_token=connection.access_token,
            store=self._store,
            config=job.config,
            job_id=job_id,
            refresh_token=connection.refresh_token,
            expires_at=connection.expires_at,
            scope=connection.scope or None,
            credentials={"team_id": connection.team_id, **connection.metadata},
            progress=job.progress,
            is_cancelled=lambda: self._is_cancelled(job_id),
            on_progress=lambda progress: self._save_progress(job_id, progress),
        )
        executor = ImportExecutor(ctx, provider)

        try:
            async with asyncio.timeout(self.run_timeout):
                result = await executor.run()
        except ImportCancelledError:
            await self._transition(job_id, "cancelled", error_message="Import cancelled")
            await self._record_cancelled_run(job_id, executor.result, ctx.progress)
        except ConnectionInvalidError as e:
            status = "expired" if isinstance(e.__cause__, ProviderAuthError) else "error"
            await self._set_connection_status(connection.connection_id, status)
            await self._transition(job_id, "failed", result=executor.result, error_message=str(e))
        except TimeoutError:
            message = (
                f"Import timed out after {self.run_timeout:g}s"
                if self.run_timeout is not None
                else "Import timed out"
            )
            logger.warning("Job %s: %s", job_id, message)
            await self._transition(job_id, "failed", result=executor.result, error_message=message)
        except Exception as e:
            logger.exception("Import job %s failed", job_id)
            await self._transition(job_id, "failed", result=executor.result, error_message=str(e))
        else:
            await self._transition(job_id, "completed", result=result)
        finally:
            await provider.aclose()
            await self._db.execute(
                "UPDATE import_connections SET last_used = ? WHERE connection_id = ?",
                (_now(), connection.connection_id),
            )

        return await self.get_job(job_id)

    async def _transition(
        self,
        job_id: str,
        status: str,
        *,
        result: ImportResult | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move an active job to a terminal status. False if it already left the active set."""
        changed = await self._db.update(
            """
            UPDATE import_jobs
            SET status = ?, result = COALESCE(?, result), error_message = ?, completed_at = ?
            WHERE job_id = ? AND status IN (?, ?)
            """,
            (
                status,
                result.model_dump_json() if result is not None else None,
                error_message,
                _now(),
                job_id,
                *_ACTIVE,
            ),
        )
        return changed > 0

    async def _record_cancelled_run(
        self, job_id: str, result: ImportResult, progress: ImportProgress
    ) -> None:
        """Keep what a cancelled run got through.

        The status may have been written by ``cancel_job`` before the run saw
        it, so this only fills in result and progress on a cancelled row.
        """
        await self._db.execute(
            "UPDATE import_jobs SET result = ?, progress = ?"
            " WHERE job_id = ? AND status = 'cancelled'",
            (result.model_dump_json(), progress.model_dump_json(), job_id),
        )

    async def _is_cancelled(self, job_id: str) -> bool:
        row = await self._db.fetchone(
            "SELECT status FROM import_jobs WHERE job_id = ?", (job_id,)
        )
        return row is None or row["status"] == "cancelled"

    async def _save_progress(self, job_id: str, progress: ImportProgress) -> None:
        await self._db.execute(
            "UPDATE import_jobs SET progress = ? WHERE job_id = ? AND status IN (?, ?)",
            (progress.model_dump_json(), job_id, *_ACTIVE),
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_connection(row: aiosqlite.Row) -> ImportConnection:
        return ImportConnection(
            connection_id=row["connection_id"],
            workspace_id=row["workspace_id"],
            member_id=row["member_id"],
            platform=row["platform"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scope=row["scope"],
            team_id=row["team_id"],
            team_name=row["team_name"],
            metadata=parse_json_field(row["metadata"]) or {},
            status=row["status"],
            connected_at=row["connected_at"],
            last_used=row["last_used"],
        )

    @staticmethod
    def _to_response(connection: ImportConnection) -> ConnectionResponse:
        return ConnectionResponse.model_validate(
            connection.model_dump(exclude={"access_token", "refresh_token"})
        )

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> ImportJob:
        result = parse_json_field(row["result"])
        return ImportJob(
            job_id=row["job_id"],
            workspace_id=row["workspace_id"],
            member_id=row["member_id"],
            connection_id=row["connection_id"],
            platform=row["platform"],
            status=row["status"],
            config=ImportConfig.model_validate(parse_json_field(row["config"]) or {}),
            progress=ImportProgress.model_validate(parse_json_field(row["progress"]) or {}),
            result=ImportResult.model_validate(result) if result is not None else None,
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
