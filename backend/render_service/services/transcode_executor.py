"""Executor running the transcoding engine with timeouts and failure classification."""

import asyncio
import codecs
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from render_service.config import settings
from render_service.exceptions import ResourceExhausted, TranscodeFailure
from render_service.services.ffmpeg_command import TranscodeLimits, build_command
from render_service.services.pipeline_builder import PipelineGraph

logger = logging.getLogger(__name__)

# Best-effort signals that the engine ran out of memory or was killed by the OS
RESOURCE_PATTERNS = re.compile(
    r"\bkilled\b|out of memory|cannot allocate memory|std::bad_alloc|\boom\b|"
    r"failed to allocate|memory allocation",
    re.IGNORECASE,
)

# Shell convention for "terminated by SIGKILL"
KILLED_EXIT_CODES = {137, -signal.SIGKILL}

STDERR_TAIL_LINES = 200
STDERR_READ_SIZE = 65536
# An unterminated line is cut to its last characters beyond this
STDERR_LINE_MAX = 8192

# Progress updates end in a bare carriage return
LINE_BREAK = re.compile(r"[\r\n]")


class StderrTail:
    """Bounded record of the last lines an engine wrote to stderr."""

    def __init__(self, maxlen: int = STDERR_TAIL_LINES):
        self.lines: deque = deque(maxlen=maxlen)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes, final: bool = False):
        parts = LINE_BREAK.split(self._pending + self._decoder.decode(data, final=final))
        self._pending = "" if final else parts.pop()
        for part in parts:
            part = part.rstrip()
            if part:
                self.lines.append(part)
        if len(self._pending) > STDERR_LINE_MAX:
            self._pending = self._pending[-STDERR_LINE_MAX:]

    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass
class TranscodeOutcome:
    """Result of a successful engine run."""

    output: str
    returncode: int
    elapsed: float
    log_tail: str


def truncate_diagnostic(text: str, limit: int = settings.DIAGNOSTIC_MAX_CHARS) -> str:
    """Keep the end of an engine log, where the error usually is."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def classify_failure(
    returncode: Optional[int], stderr: str, limit: int = settings.DIAGNOSTIC_MAX_CHARS
):
    """
    Map a non-zero engine exit to ResourceExhausted or TranscodeFailure.

    The stderr heuristics are best effort: a missed pattern degrades to
    TranscodeFailure, never the reverse.
    """
    diagnostic = truncate_diagnostic(stderr, limit)
    if returncode in KILLED_EXIT_CODES or (returncode is not None and returncode < 0):
        return ResourceExhausted(
            f"engine killed by signal (exit {returncode})", diagnostic, returncode
        )
    if RESOURCE_PATTERNS.search(stderr or ""):
        return ResourceExhausted(
            f"engine ran out of resources (exit {returncode})", diagnostic, returncode
        )
    return TranscodeFailure(f"engine exited with code {returncode}", diagnostic, returncode)


async def terminate_process_group(process: asyncio.subprocess.Process, grace: float = 0.5):
    """Terminate the engine's whole process group, escalating to SIGKILL."""
    if process.returncode is not None:
        return
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        pass
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except ProcessLookupError:
        return
    await process.wait()


def discard_partial(path: str):
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial output {path}: {e}")


class TranscodeExecutor:
    """Runs the external engine for a pipeline graph."""

    def __init__(
        self,
        ffmpeg_bin: str = settings.FFMPEG_BIN,
        diagnostic_limit: int = settings.DIAGNOSTIC_MAX_CHARS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.diagnostic_limit = diagnostic_limit

    async def execute(
        self,
        graph: PipelineGraph,
        inputs: Mapping[str, str],
        output: str,
        limits: TranscodeLimits,
    ) -> TranscodeOutcome:
        """
        Render graph into output.

        Args:
            graph: Pipeline to run
            inputs: Local file per input role
            output: Destination path, written only on success
            limits: Threads, keyframe interval and wall-clock timeout

        Returns:
            TranscodeOutcome

        Raises:
            ResourceExhausted: killed, out of memory, or timed out
            TranscodeFailure: any other non-zero exit
        """
        cmd = build_command(graph, inputs, output, limits, ffmpeg_bin=self.ffmpeg_bin)
        return await self.run(
            cmd,
            output,
            limits.timeout,
            label=f"{graph.mode.value} render",
        )

    async def run(
        self,
        cmd: List[str],
        output: str,
        timeout: float,
        label: str = "engine",
        process_callback: Optional[Callable] = None,
    ) -> TranscodeOutcome:
        """Run an engine command line under a wall-clock timeout."""
        logger.info(f"Starting {label}: {' '.join(cmd)}")
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise TranscodeFailure(f"could not start {cmd[0]}: {e}") from e

        if process_callback:
            await process_callback(process)

        # Only the tail of stderr is kept so chatty runs do not grow memory
        tail = StderrTail()

        async def drain_stderr():
            assert process.stderr is not None
            # Fixed-size reads keep the pipe drained whatever the line length
            while True:
                chunk = await process.stderr.read(STDERR_READ_SIZE)
                if not chunk:
                    break
                tail.feed(chunk)
            tail.feed(b"", final=True)

        reader = asyncio.create_task(drain_stderr())
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"{label} timed out after {timeout:g}s, killing engine")
            await terminate_process_group(process, grace=0)
            await self._finish_reader(reader)
            discard_partial(output)
            raise ResourceExhausted(
                f"engine timed out after {timeout:g}s",
                truncate_diagnostic(tail.text(), self.diagnostic_limit),
            )
        except asyncio.CancelledError:
            logger.warning(f"{label} cancelled, terminating engine")
            await terminate_process_group(process)
            await self._finish_reader(reader)
            discard_partial(output)
            raise

        await self._finish_reader(reader)
        stderr_text = tail.text()
        elapsed = loop.time() - started

        if process.returncode != 0:
            logger.error(f"{label} failed with exit code {process.returncode}")
            discard_partial(output)
            raise classify_failure(process.returncode, stderr_text, self.diagnostic_limit)

        logger.info(f"{label} completed in {elapsed:.1f}s")
        return TranscodeOutcome(
            output=output,
            returncode=process.returncode,
            elapsed=elapsed,
            log_tail=truncate_diagnostic(stderr_text, self.diagnostic_limit),
        )

    @staticmethod
    async def _finish_reader(reader: asyncio.Task):
        try:
            await asyncio.wait_for(reader, timeout=5)
        except asyncio.TimeoutError:
            reader.cancel()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error reading engine output: {e}")


# Global executor instance
transcode_executor = TranscodeExecutor()
