"""Still-frame extraction from a remote video."""

import base64
import logging
import uuid
from pathlib import Path
from typing import List, Optional

from render_service.config import settings
from render_service.models.schemas import FramesRequest
from render_service.services.asset_fetcher import VIDEO_CONTENT_TYPES, AssetFetcher, asset_fetcher
from render_service.services.cleanup import CleanupScope
from render_service.services.ffmpeg_command import QUIET_ARGS
from render_service.services.transcode_executor import TranscodeExecutor, transcode_executor

logger = logging.getLogger(__name__)


def seek_command(ffmpeg_bin: str, source: str, at: float, width: int, quality: int, output: str) -> list:
    """One frame at a timestamp; input seeking keeps long videos cheap."""
    return [
        ffmpeg_bin, *QUIET_ARGS,
        "-ss", format(at, ".3f"), "-i", source,
        "-frames:v", "1",
        "-vf", f"scale={width}:-2:flags=lanczos",
        "-q:v", str(quality),
        output,
    ]


def sample_command(
    ffmpeg_bin: str, source: str, every_sec: float, max_frames: int, width: int, quality: int, pattern: str
) -> list:
    """One frame every every_sec seconds, numbered from 1."""
    return [
        ffmpeg_bin, *QUIET_ARGS,
        "-i", source,
        "-vf", f"fps=1/{format(every_sec, 'g')},scale={width}:-2:flags=lanczos",
        "-frames:v", str(max_frames),
        "-q:v", str(quality),
        pattern,
    ]


def as_data_uri(path: Path) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(path.read_bytes()).decode("ascii")


class FrameService:
    """Downloads a video and samples JPEG frames from it."""

    def __init__(
        self,
        fetcher: Optional[AssetFetcher] = None,
        executor: Optional[TranscodeExecutor] = None,
        temp_dir: str = settings.TEMP_DIR,
        timeout: float = settings.TRANSCODE_TIMEOUT,
    ):
        self.fetcher = fetcher or asset_fetcher
        self.executor = executor or transcode_executor
        self.temp_dir = temp_dir
        self.timeout = timeout

    async def extract(self, request: FramesRequest) -> List[str]:
        """
        Extract frames as base64 data URIs.

        Args:
            request: Explicit times, or a sampling period

        Returns:
            Data URIs in time order
        """
        frames: List[str] = []
        name = f"frames_{uuid.uuid4().hex}"
        ffmpeg_bin = self.executor.ffmpeg_bin

        with CleanupScope(label=name) as scope:
            workdir = scope.workspace(self.temp_dir, name)
            source = scope.track(str(workdir / "source.mp4"))
            await self.fetcher.fetch(request.video_url, source, VIDEO_CONTENT_TYPES)

            if request.times:
                for index, at in enumerate(request.timestamps()):
                    out = workdir / f"at_{index:03d}.jpg"
                    cmd = seek_command(ffmpeg_bin, source, at, request.scale, request.jpg_quality, str(out))
                    await self.executor.run(cmd, str(out), self.timeout, label=f"{name} frame {at:g}s")
                    # Seeking past the end produces no file
                    if out.is_file():
                        frames.append(as_data_uri(out))
            else:
                pattern = workdir / "frame-%03d.jpg"
                cmd = sample_command(
                    ffmpeg_bin,
                    source,
                    request.every_sec,
                    request.max_frames,
                    request.scale,
                    request.jpg_quality,
                    str(pattern),
                )
                await self.executor.run(cmd, str(pattern), self.timeout, label=f"{name} sampling")
                for index in range(1, request.max_frames + 1):
                    out = workdir / f"frame-{index:03d}.jpg"
                    if not out.is_file():
                        break
                    frames.append(as_data_uri(out))

        logger.info(f"Extracted {len(frames)} frames from {request.video_url}")
        return frames


# Global frame service instance
frame_service = FrameService()
