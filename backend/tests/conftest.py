"""
Pytest fixtures for render service tests.

Settings are read at import time, so scratch directories are pointed at a
throwaway location before any render_service module is imported.

Tests that drive the real ffmpeg binary are marked requires_ffmpeg and are
skipped when it is not on PATH.
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

_SESSION_ROOT = Path(tempfile.mkdtemp(prefix="render_service_tests_"))
os.environ.setdefault("TEMP_DIR", str(_SESSION_ROOT / "temp"))
os.environ.setdefault("OUTPUT_DIR", str(_SESSION_ROOT / "output"))
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest  # noqa: E402

from render_service.exceptions import (  # noqa: E402
    ResourceExhausted,
    TranscodeFailure,
    UpstreamStatusError,
)
from render_service.models.schemas import RenderParameters  # noqa: E402
from render_service.services.output_store import OutputStore  # noqa: E402
from render_service.services.pipeline_builder import FallbackPolicy  # noqa: E402
from render_service.services.render_runner import RenderRunner  # noqa: E402
from render_service.services.transcode_executor import TranscodeOutcome  # noqa: E402

VIDEO_URL = "https://media.example.com/clip.mp4"
AUDIO_URL = "https://media.example.com/voice.mp3"
SRT_URL = "https://media.example.com/voice.srt"
BGM_URL = "https://media.example.com/music.mp3"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: test runs the real ffmpeg binary (skipped when missing)",
    )


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_SESSION_ROOT, ignore_errors=True)


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not available on PATH",
)


class FakeFetcher:
    """Writes placeholder bytes instead of downloading; fails for listed URLs."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def fetch(self, url, destination, allowed_content_types, connect_timeout=None, stall_timeout=None):
        self.calls.append((url, destination))
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        Path(destination).write_bytes(b"partial")
        if url in self.failures:
            raise self.failures[url]
        Path(destination).write_bytes(f"asset:{url}".encode())
        return len(url)


class FakeExecutor:
    """
    Scripted engine.

    script is a list consumed one entry per execute call: "ok", "oom",
    "fail", or a float meaning "sleep this long then succeed".
    """

    def __init__(self, script=None, default="ok"):
        self.script = list(script or [])
        self.default = default
        self.graphs = []
        self.inputs = []
        self.started = []
        self.active = 0
        self.peak_active = 0

    async def execute(self, graph, inputs, output, limits):
        self.graphs.append(graph)
        self.inputs.append(dict(inputs))
        self.started.append(Path(output).parent.name)
        action = self.script.pop(0) if self.script else self.default
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if isinstance(action, (int, float)):
                await asyncio.sleep(action)
            elif action == "oom":
                Path(output).write_bytes(b"half a video")
                raise ResourceExhausted("engine killed by signal (exit -9)", "Killed", -9)
            elif action == "fail":
                raise TranscodeFailure("engine exited with code 1", "Invalid argument", 1)
            Path(output).write_bytes(b"\x00\x00\x00\x18ftypmp42 rendered video")
            return TranscodeOutcome(output=output, returncode=0, elapsed=0.01, log_tail="")
        finally:
            self.active -= 1


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    path = tmp_path / "temp"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "output"
    path.mkdir()
    return path


@pytest.fixture
def output_store(output_dir: Path) -> OutputStore:
    return OutputStore(str(output_dir))


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_runner(temp_dir: Path):
    def _make(fetcher, executor, fallback_enabled=True):
        return RenderRunner(
            fetcher=fetcher,
            executor=executor,
            temp_dir=str(temp_dir),
            transcode_timeout=5,
            fallback_enabled=fallback_enabled,
            fallback_policy=FallbackPolicy(canvas_scale=0.5, burn_subtitles=False),
        )
    return _make


@pytest.fixture
def render_parameters() -> RenderParameters:
    return RenderParameters(video_url=VIDEO_URL, audio_url=AUDIO_URL)


def not_found(url: str) -> UpstreamStatusError:
    return UpstreamStatusError(url, 404)
