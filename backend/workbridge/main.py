"""Workbridge FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workbridge.config import Settings
from workbridge.db.connection import Database
from workbridge.importer.jobs import JobService
from workbridge.importer.router import get_job_service
from workbridge.importer.router import router as imports_router
from workbridge.importer.store import SqliteImportStore
from workbridge.providers.registry import (
    clear_providers,
    list_platforms,
    register_default_providers,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    # Load .env from backend/ directory (secrets stay out of shell profile)
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    db = await Database.connect(settings.db_path)

    register_default_providers()

    job_service = JobService(
        db,
        store=SqliteImportStore(db),
        run_timeout=settings.run_timeout,
    )
    app.dependency_overrides[get_job_service] = lambda: job_service

    app.state.db = db
    app.state.settings = settings
    yield

    clear_providers()
    await db.close()


app = FastAPI(
    title="Workbridge",
    description="Imports channels, issues and tasks from Slack, Linear and Todoist",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Settings.from_env().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [{"platform": name, "available": True} for name in list_platforms()]
