"""Error taxonomy for render jobs.

Fetch and transcode errors are caught by the scheduler and recorded on the
job; only ValidationError and SchedulerBusy reach a caller synchronously.
"""

from typing import Optional


class RenderServiceError(Exception):
    """Base class for all render service errors."""

    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def describe(self) -> str:
        """Diagnostic string stored on failed jobs."""
        return f"{self.code}: {self.message}"


class ValidationError(RenderServiceError):
    """A submission is missing required inputs."""

    code = "VALIDATION_ERROR"


class SchedulerBusy(RenderServiceError):
    """No concurrency slot is free for a synchronous request."""

    code = "BUSY"


# =============================================================================
# Asset fetching
# =============================================================================


class UpstreamFetchError(RenderServiceError):
    """A remote asset could not be retrieved."""

    code = "UPSTREAM_FETCH_ERROR"

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class UpstreamStatusError(UpstreamFetchError):
    """The remote server answered with a non-success status."""

    code = "UPSTREAM_STATUS"

    def __init__(self, url: str, status_code: int):
        self.status_code = status_code
        super().__init__(f"fetch {url} failed with HTTP status {status_code}", url=url)


class UnexpectedContentType(UpstreamFetchError):
    """The remote resource is not of an accepted media type."""

    code = "UNEXPECTED_CONTENT_TYPE"

    def __init__(self, url: str, content_type: str, looks_like_html: bool = False):
        self.content_type = content_type
        self.looks_like_html = looks_like_html
        if looks_like_html:
            message = (
                f"fetch {url} returned an HTML page ({content_type}); "
                "the URL is probably a share link, not a direct download"
            )
        else:
            message = f"fetch {url} returned unexpected content type {content_type or '<none>'}"
        super().__init__(message, url=url)


class ConnectTimeout(UpstreamFetchError):
    """No response headers arrived in time."""

    code = "CONNECT_TIMEOUT"


class ReadTimeout(UpstreamFetchError):
    """The body stopped arriving for longer than the stall timeout."""

    code = "READ_TIMEOUT"


# =============================================================================
# Transcoding
# =============================================================================


class TranscodeError(RenderServiceError):
    """The transcoding engine did not produce an output."""

    code = "TRANSCODE_ERROR"

    def __init__(self, message: str, diagnostic: str = "", returncode: Optional[int] = None):
        self.diagnostic = diagnostic
        self.returncode = returncode
        super().__init__(message)

    def describe(self) -> str:
        if self.diagnostic:
            return f"{self.code}: {self.message}\n{self.diagnostic}"
        return super().describe()


class ResourceExhausted(TranscodeError):
    """The engine was killed, ran out of memory or timed out."""

    code = "RESOURCE_EXHAUSTED"


class TranscodeFailure(TranscodeError):
    """The engine exited non-zero for any other reason."""

    code = "TRANSCODE_FAILURE"


class JobTimeout(RenderServiceError):
    """The end-to-end job deadline elapsed."""

    code = "JOB_TIMEOUT"
