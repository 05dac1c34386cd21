"""Streaming download of remote media assets with connect and stall timeouts."""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional

import httpx

from render_service.config import settings
from render_service.exceptions import (
    ConnectTimeout,
    ReadTimeout,
    UnexpectedContentType,
    UpstreamFetchError,
    UpstreamStatusError,
)

logger = logging.getLogger(__name__)

# Content-type substrings accepted per asset role
VIDEO_CONTENT_TYPES = ("video/", "application/mp4", "application/octet-stream", "binary/octet-stream")
AUDIO_CONTENT_TYPES = (
    "audio/",
    "video/",
    "application/ogg",
    "application/octet-stream",
    "binary/octet-stream",
)
SUBTITLE_CONTENT_TYPES = (
    "text/plain",
    "application/x-subrip",
    "text/srt",
    "text/vtt",
    "application/octet-stream",
    "binary/octet-stream",
)

# Share-link landing pages instead of direct downloads
HTML_CONTENT_TYPES = ("text/html", "application/xhtml")


def looks_like_html(content_type: str) -> bool:
    lowered = content_type.lower()
    return any(marker in lowered for marker in HTML_CONTENT_TYPES)


async def _next_chunk(iterator) -> Optional[bytes]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class AssetFetcher:
    """Downloads remote assets to local paths."""

    def __init__(
        self,
        connect_timeout: float = settings.FETCH_CONNECT_TIMEOUT,
        stall_timeout: float = settings.FETCH_STALL_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout
        self.stall_timeout = stall_timeout
        self._transport = transport

    async def fetch(
        self,
        url: str,
        destination: str,
        allowed_content_types: Iterable[str],
        connect_timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
    ) -> int:
        """
        Stream url into destination.

        Args:
            url: Remote resource
            destination: Local file path, overwritten
            allowed_content_types: Substrings of which the response content
                type must contain at least one
            connect_timeout: Seconds to wait for response headers
            stall_timeout: Seconds allowed between two received chunks

        Returns:
            Number of bytes written

        Raises:
            UpstreamFetchError: or one of its subclasses. A partially written
                destination is left for the caller to delete.
        """
        connect_timeout = connect_timeout or self.connect_timeout
        stall_timeout = stall_timeout or self.stall_timeout
        timeout = httpx.Timeout(
            connect=connect_timeout,
            read=stall_timeout,
            write=connect_timeout,
            pool=connect_timeout,
        )

        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=self._transport
        ) as client:
            request = client.build_request("GET", url)
            try:
                response = await asyncio.wait_for(
                    client.send(request, stream=True), timeout=connect_timeout
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise ConnectTimeout(
                    f"fetch {url}: no response within {connect_timeout:g}s", url=url
                ) from e
            except httpx.HTTPError as e:
                raise UpstreamFetchError(f"fetch {url} failed: {e}", url=url) from e

            try:
                if not response.is_success:
                    raise UpstreamStatusError(url, response.status_code)

                content_type = response.headers.get("content-type", "")
                if looks_like_html(content_type):
                    raise UnexpectedContentType(url, content_type, looks_like_html=True)
                lowered = content_type.lower()
                if not any(allowed in lowered for allowed in allowed_content_types):
                    raise UnexpectedContentType(url, content_type)

                written = await self._stream_to_file(response, url, destination, stall_timeout)
            finally:
                await response.aclose()

        if written == 0:
            raise UpstreamFetchError(f"fetch {url} returned an empty body", url=url)

        logger.info(f"Fetched {url} -> {destination} ({written} bytes)")
        return written

    async def _stream_to_file(
        self, response: httpx.Response, url: str, destination: str, stall_timeout: float
    ) -> int:
        written = 0
        # No chunk size: every network read is written as soon as it arrives
        iterator = response.aiter_bytes().__aiter__()
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        with open(destination, "wb") as handle:
            while True:
                # The stall timer restarts with every chunk
                try:
                    chunk = await asyncio.wait_for(_next_chunk(iterator), timeout=stall_timeout)
                except (asyncio.TimeoutError, httpx.ReadTimeout) as e:
                    raise ReadTimeout(
                        f"fetch {url}: no data for {stall_timeout:g}s after {written} bytes",
                        url=url,
                    ) from e
                except httpx.HTTPError as e:
                    raise UpstreamFetchError(f"fetch {url} interrupted: {e}", url=url) from e
                if chunk is None:
                    break
                handle.write(chunk)
                written += len(chunk)
        return written


# Global fetcher instance
asset_fetcher = AssetFetcher()
