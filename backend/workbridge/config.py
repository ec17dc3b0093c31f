"""Process-wide settings read from the environment."""

import os
from dataclasses import dataclass, field


def _float_or_none(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    value = float(raw)
    return value if value > 0 else None


@dataclass(frozen=True)
class Settings:
    db_path: str = "workbridge.db"
    run_timeout: float | None = None  # seconds; None = no wall-clock limit
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("WORKBRIDGE_CORS_ORIGINS")
        return cls(
            db_path=os.environ.get("WORKBRIDGE_DB_PATH", "workbridge.db"),
            run_timeout=_float_or_none(os.environ.get("WORKBRIDGE_RUN_TIMEOUT")),
            log_level=os.environ.get("WORKBRIDGE_LOG_LEVEL", "INFO").upper(),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins
                else ["http://localhost:5173"]
            ),
        )
