"""Render job API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse

from render_service.exceptions import ValidationError
from render_service.models.schemas import (
    JobListResponse,
    JobStatusResponse,
    JobSubmitResponse,
    RenderParameters,
)
from render_service.services.job_queue import job_queue

logger = logging.getLogger(__name__)

router = APIRouter()


def status_url(job_id: str) -> str:
    return f"/api/jobs/{job_id}"


def result_url(job_id: str) -> str:
    return f"/api/jobs/{job_id}/result"


def _status_response(snapshot: dict) -> JobStatusResponse:
    done = snapshot["status"] == "done"
    return JobStatusResponse(
        **snapshot,
        result_url=result_url(snapshot["job_id"]) if done else None,
    )


@router.post("", response_model=JobSubmitResponse, status_code=202)
async def submit_job(parameters: RenderParameters):
    """
    Queue a render job.

    Args:
        parameters: Source URLs and effect settings

    Returns:
        Job id plus status and result URLs
    """
    try:
        job = await job_queue.submit(parameters)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.error(f"Error creating job: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"Created job {job.id} for {parameters.video_url}")
    return JobSubmitResponse(
        job_id=job.id,
        status=job.status.value,
        status_url=status_url(job.id),
        result_url=result_url(job.id),
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(status: Optional[str] = Query(None, description="Filter by status")):
    """List indexed jobs, newest first."""
    jobs = [_status_response(snapshot) for snapshot in job_queue.list_jobs(status)]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str):
    """
    Get job status by ID.

    Args:
        job_id: Job ID

    Returns:
        Status, error and timestamps; the result URL once done
    """
    snapshot = job_queue.query(job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _status_response(snapshot)


@router.get("/{job_id}/result")
async def get_job_result(job_id: str):
    """
    Download the rendered video.

    Returns 425 while the job is queued or processing and 500 with the
    stored diagnostic if it failed.
    """
    lookup = job_queue.fetch_output(job_id)

    if lookup.state == "not_ready":
        raise HTTPException(status_code=425, detail=f"Job is {lookup.status}")
    if lookup.state == "failed":
        raise HTTPException(status_code=500, detail=lookup.error or "Render failed")
    if lookup.state != "ready":
        raise HTTPException(status_code=404, detail="Job not found")

    return FileResponse(
        lookup.path,
        media_type="video/mp4",
        filename=f"{job_id}.mp4",
        content_disposition_type="inline",
    )
