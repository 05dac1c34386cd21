"""Synchronous render and frame extraction endpoints."""

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import FileResponse

from render_service.exceptions import (
    JobTimeout,
    ResourceExhausted,
    SchedulerBusy,
    TranscodeError,
    UpstreamFetchError,
)
from render_service.models.schemas import FramesRequest, FramesResponse, RenderParameters
from render_service.services.cleanup import CleanupScope
from render_service.services.frame_service import frame_service
from render_service.services.job_queue import job_queue

logger = logging.getLogger(__name__)

router = APIRouter()

DISCONNECT_POLL_INTERVAL = 0.5


class ClientDisconnected(Exception):
    """The client went away before the result was ready."""


async def run_while_connected(request: Request, coro, poll_interval: float = DISCONNECT_POLL_INTERVAL):
    """
    Await coro, cancelling it as soon as the client disconnects.

    Cancelling the work terminates any running engine process; the caller's
    cleanup scope then removes its files.

    Raises:
        ClientDisconnected: the client closed the connection first
    """
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling work")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise ClientDisconnected()
    except asyncio.CancelledError:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SchedulerBusy):
        return HTTPException(status_code=503, detail="busy")
    if isinstance(e, UpstreamFetchError):
        return HTTPException(status_code=502, detail=e.describe())
    if isinstance(e, (ResourceExhausted, JobTimeout)):
        return HTTPException(status_code=503, detail=e.describe())
    if isinstance(e, TranscodeError):
        return HTTPException(status_code=500, detail=e.describe())
    return HTTPException(status_code=500, detail=str(e))


class ReleasingFileResponse(FileResponse):
    """FileResponse that releases a cleanup scope however the transfer ends."""

    def __init__(self, path: str, cleanup: CleanupScope, **kwargs):
        super().__init__(path, **kwargs)
        self.cleanup = cleanup

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.cleanup.release()


@router.post("/render")
async def render_now(parameters: RenderParameters, request: Request):
    """
    Render and stream the result in the same request.

    The render shares the scheduler's concurrency slots; 503 when none is
    free. Disconnecting cancels the render and removes its files.
    """
    name = f"sync_{uuid.uuid4().hex}"
    scope = CleanupScope(label=name)
    output = str(Path(job_queue.runner.temp_dir) / name / "output.mp4")

    try:
        async with job_queue.reserve_slot(name):
            await run_while_connected(
                request,
                asyncio.wait_for(
                    job_queue.runner.render(parameters, output, scope, workspace_name=name),
                    timeout=job_queue.job_timeout,
                ),
            )
    except ClientDisconnected:
        scope.release()
        return Response(status_code=499)
    except asyncio.TimeoutError:
        scope.release()
        raise _http_error(JobTimeout(f"render did not finish within {job_queue.job_timeout:g}s"))
    except (SchedulerBusy, UpstreamFetchError, TranscodeError) as e:
        scope.release()
        logger.error(f"Synchronous render {name} failed: {e}")
        raise _http_error(e)
    except BaseException:
        scope.release()
        raise

    return ReleasingFileResponse(
        output,
        cleanup=scope,
        media_type="video/mp4",
        filename=f"{name}.mp4",
        content_disposition_type="inline",
    )


@router.post("/frames", response_model=FramesResponse)
async def extract_frames(frames_request: FramesRequest, request: Request):
    """
    Extract JPEG frames from a video.

    Returns:
        Base64 data URIs and their count
    """
    try:
        async with job_queue.reserve_slot("frames"):
            frames = await run_while_connected(request, frame_service.extract(frames_request))
    except ClientDisconnected:
        return Response(status_code=499)
    except (SchedulerBusy, UpstreamFetchError, TranscodeError) as e:
        logger.error(f"Frame extraction failed: {e}")
        raise _http_error(e)

    return FramesResponse(frames=frames, count=len(frames))
