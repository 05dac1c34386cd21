"""Fetch, build and transcode one render, with a single fallback retry."""

import logging
import shutil
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from render_service.config import settings
from render_service.exceptions import ResourceExhausted, TranscodeError
from render_service.models.schemas import RenderParameters
from render_service.services.asset_fetcher import (
    AUDIO_CONTENT_TYPES,
    SUBTITLE_CONTENT_TYPES,
    VIDEO_CONTENT_TYPES,
    AssetFetcher,
    asset_fetcher,
)
from render_service.services.cleanup import CleanupScope
from render_service.services.ffmpeg_command import TranscodeLimits
from render_service.services.pipeline_builder import (
    ROLE_BGM,
    ROLE_NARRATION,
    ROLE_SUBTITLES,
    ROLE_VIDEO,
    FallbackPolicy,
    PipelineMode,
    build,
)
from render_service.services.transcode_executor import (
    TranscodeExecutor,
    TranscodeOutcome,
    transcode_executor,
)

logger = logging.getLogger(__name__)


def local_suffix(url: str, default: str) -> str:
    """File extension of a URL path, or default when it has none usable."""
    suffix = Path(urlparse(url).path).suffix.lower()
    if 1 < len(suffix) <= 5 and suffix[1:].isalnum():
        return suffix
    return default


class RenderRunner:
    """Runs the stages of one render strictly in sequence."""

    def __init__(
        self,
        fetcher: Optional[AssetFetcher] = None,
        executor: Optional[TranscodeExecutor] = None,
        temp_dir: str = settings.TEMP_DIR,
        transcode_timeout: float = settings.TRANSCODE_TIMEOUT,
        fallback_enabled: bool = settings.FALLBACK_ENABLED,
        fallback_policy: Optional[FallbackPolicy] = None,
    ):
        self.fetcher = fetcher or asset_fetcher
        self.executor = executor or transcode_executor
        self.temp_dir = temp_dir
        self.transcode_timeout = transcode_timeout
        self.fallback_enabled = fallback_enabled
        self.fallback_policy = fallback_policy or FallbackPolicy()

    async def fetch_inputs(
        self, parameters: RenderParameters, scope: CleanupScope, workdir: Path
    ) -> Dict[str, str]:
        """
        Download every requested asset into workdir.

        Paths are registered with scope before the download starts so a
        partial file is removed with the rest.

        Returns:
            Local path per input role
        """
        plan = [
            (ROLE_VIDEO, parameters.video_url, ".mp4", VIDEO_CONTENT_TYPES),
            (ROLE_NARRATION, parameters.audio_url, ".mp3", AUDIO_CONTENT_TYPES),
        ]
        if parameters.srt_url:
            plan.append((ROLE_SUBTITLES, parameters.srt_url, ".srt", SUBTITLE_CONTENT_TYPES))
        if parameters.bgm_url:
            plan.append((ROLE_BGM, parameters.bgm_url, ".mp3", AUDIO_CONTENT_TYPES))

        inputs: Dict[str, str] = {}
        for role, url, default_suffix, allowed in plan:
            destination = scope.track(str(workdir / f"{role}{local_suffix(url, default_suffix)}"))
            await self.fetcher.fetch(url, destination, allowed)
            inputs[role] = destination
        return inputs

    async def render(
        self,
        parameters: RenderParameters,
        output: str,
        scope: CleanupScope,
        workspace_name: str,
        on_attempt: Optional[Callable[[str], None]] = None,
    ) -> TranscodeOutcome:
        """
        Produce output from parameters.

        The engine writes into the scratch workspace; the file is moved to
        output only after a successful run, so output never holds a partial
        render.

        Args:
            parameters: Render request snapshot
            output: Final artifact path
            scope: Cleanup scope owning every temporary file
            workspace_name: Scratch directory name under the temp dir
            on_attempt: Called with the pipeline mode before each engine run

        Raises:
            UpstreamFetchError: an asset could not be fetched
            ResourceExhausted, TranscodeFailure: the engine failed
        """
        workdir = scope.workspace(self.temp_dir, workspace_name)
        inputs = await self.fetch_inputs(parameters, scope, workdir)

        staging = scope.track(str(workdir / "render.mp4"))
        limits = TranscodeLimits(
            threads=parameters.threads,
            keyframe_interval=parameters.keyframe_interval,
            timeout=self.transcode_timeout,
        )
        has_subtitles = ROLE_SUBTITLES in inputs
        has_bgm = ROLE_BGM in inputs

        graph = build(
            parameters,
            PipelineMode.PRIMARY,
            has_subtitles=has_subtitles,
            has_bgm=has_bgm,
            policy=self.fallback_policy,
        )
        try:
            if on_attempt:
                on_attempt(PipelineMode.PRIMARY.value)
            outcome = await self.executor.execute(graph, inputs, staging, limits)
        except ResourceExhausted as primary_error:
            if not self.fallback_enabled:
                raise
            logger.warning(
                f"{workspace_name}: primary render exhausted resources ({primary_error.message}), "
                f"retrying with fallback pipeline"
            )
            fallback = build(
                parameters,
                PipelineMode.FALLBACK,
                has_subtitles=has_subtitles,
                has_bgm=has_bgm,
                policy=self.fallback_policy,
            )
            try:
                if on_attempt:
                    on_attempt(PipelineMode.FALLBACK.value)
                outcome = await self.executor.execute(fallback, inputs, staging, limits)
            except TranscodeError as fallback_error:
                raise type(fallback_error)(
                    f"primary attempt: {primary_error.message}; "
                    f"fallback attempt: {fallback_error.message}",
                    fallback_error.diagnostic,
                    fallback_error.returncode,
                ) from fallback_error

        Path(output).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(staging, output)
        outcome.output = output
        return outcome


# Global runner instance
render_runner = RenderRunner()
