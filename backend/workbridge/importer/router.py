"""Imports API routes: connections and jobs."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from workbridge.importer.jobs import (
    ConnectionNotFoundError,
    ConnectionUnavailableError,
    JobNotFoundError,
    JobService,
    JobStateError,
)
from workbridge.importer.schemas import (
    ConnectionResponse,
    CreateConnectionRequest,
    StartJobRequest,
)
from workbridge.models import ImportJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/imports", tags=["imports"])


def get_job_service() -> JobService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("JobService not configured")


async def _run_in_background(service: JobService, job_id: str) -> None:
    try:
        await service.run_job(job_id)
    except JobStateError as e:
        # Cancelled before the run started
        logger.info("Skipping job %s: %s", job_id, e)


@router.get("/connections")
async def list_connections(
    workspace_id: str = Query(...),
    service: JobService = Depends(get_job_service),
) -> list[ConnectionResponse]:
    return await service.list_connections(workspace_id)


@router.post("/connections", status_code=201)
async def create_connection(
    request: CreateConnectionRequest,
    service: JobService = Depends(get_job_service),
) -> ConnectionResponse:
    return await service.create_connection(
        request.workspace_id,
        request.member_id,
        request.platform,
        request.access_token,
        refresh_token=request.refresh_token,
        expires_at=request.expires_at,
        scope=request.scope,
        team_id=request.team_id,
        team_name=request.team_name,
        metadata=request.metadata,
    )


@router.post("/connections/{connection_id}/disconnect")
async def disconnect_connection(
    connection_id: str,
    service: JobService = Depends(get_job_service),
) -> ConnectionResponse:
    try:
        return await service.disconnect_connection(connection_id)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/jobs")
async def list_jobs(
    workspace_id: str = Query(...),
    limit: int | None = Query(None, ge=1),
    service: JobService = Depends(get_job_service),
) -> list[ImportJob]:
    return await service.list_jobs(workspace_id, limit=limit)


@router.post("/jobs", status_code=202)
async def start_job(
    request: StartJobRequest,
    background_tasks: BackgroundTasks,
    service: JobService = Depends(get_job_service),
) -> ImportJob:
    """Create a pending job and run it after the response is sent."""
    try:
        job = await service.start_job(
            request.workspace_id, request.member_id, request.platform, request.config
        )
    except ConnectionUnavailableError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    background_tasks.add_task(_run_in_background, service, job.job_id)
    return job


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
) -> ImportJob:
    try:
        return await service.get_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
) -> ImportJob:
    try:
        return await service.cancel_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
