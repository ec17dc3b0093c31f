"""Import context: the capability bundle handed through one run.

Credentials, run configuration, progress counters, a cancellation check,
logging, and the injected persistence operations. Providers only read it;
the executor is the single writer of progress.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from workbridge.errors import ImportCancelledError
from workbridge.models import ImportConfig, ImportProgress

if TYPE_CHECKING:
    from workbridge.importer.store import ImportStore

LogLevel = Literal["debug", "info", "warning", "error"]

_COUNTERS = (
    "items_imported",
    "items_total",
    "sub_items_imported",
    "sub_items_total",
    "users_imported",
    "files_imported",
)

_run_logger = logging.getLogger("workbridge.import")


async def _never_cancelled() -> bool:
    return False


@dataclass
class ImportContext:
    workspace_id: str
    member_id: str
    access_token: str
    store: "ImportStore"
    config: ImportConfig = field(default_factory=ImportConfig)
    job_id: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    credentials: dict[str, Any] = field(default_factory=dict)
    progress: ImportProgress = field(default_factory=ImportProgress)
    is_cancelled: Callable[[], Awaitable[bool]] = _never_cancelled
    on_progress: Callable[[ImportProgress], Awaitable[None]] | None = None
    log_sink: Callable[[str, str, Any], Awaitable[None]] | None = None
    logger: logging.Logger = _run_logger

    async def raise_if_cancelled(self) -> None:
        """Checkpoint: raise ImportCancelledError if cancellation was requested."""
        if await self.is_cancelled():
            raise ImportCancelledError()

    async def update_progress(self, **changes: Any) -> ImportProgress:
        """Merge a partial progress update and publish the snapshot.

        Counters only ever grow: a smaller value than the current one is
        ignored, so concurrent reporters cannot move progress backwards.
        """
        merged = self.progress.model_dump()
        for key, value in changes.items():
            if key in _COUNTERS:
                merged[key] = max(merged[key], value)
            elif key == "platform_data":
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        self.progress = ImportProgress.model_validate(merged)
        if self.on_progress is not None:
            await self.on_progress(self.progress.model_copy(deep=True))
        return self.progress

    async def log(self, level: LogLevel, message: str, data: Any = None) -> None:
        """Structured log line for this run, plus the optional async sink."""
        self.logger.log(
            logging.getLevelName(level.upper()),
            message,
            extra={"job_id": self.job_id, "data": data},
        )
        if self.log_sink is not None:
            await self.log_sink(level, message, data)
