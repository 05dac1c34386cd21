"""Tests for remote asset download."""

import asyncio

import httpx
import pytest

from render_service.exceptions import (
    ConnectTimeout,
    ReadTimeout,
    UnexpectedContentType,
    UpstreamFetchError,
    UpstreamStatusError,
)
from render_service.services.asset_fetcher import (
    AUDIO_CONTENT_TYPES,
    SUBTITLE_CONTENT_TYPES,
    VIDEO_CONTENT_TYPES,
    AssetFetcher,
    looks_like_html,
)

from conftest import VIDEO_URL


class StallingStream(httpx.AsyncByteStream):
    """Sends one chunk and then goes silent."""

    async def __aiter__(self):
        yield b"first chunk"
        await asyncio.sleep(10)
        yield b"never"


class TricklingStream(httpx.AsyncByteStream):
    """Sends small chunks with short pauses, never long enough to stall."""

    def __init__(self, chunks=20, size=1024, pause=0.05):
        self.chunks = chunks
        self.size = size
        self.pause = pause

    async def __aiter__(self):
        for _ in range(self.chunks):
            await asyncio.sleep(self.pause)
            yield b"\x00" * self.size


def fetcher_for(handler, **kwargs) -> AssetFetcher:
    return AssetFetcher(
        connect_timeout=kwargs.pop("connect_timeout", 2),
        stall_timeout=kwargs.pop("stall_timeout", 2),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_looks_like_html():
    assert looks_like_html("text/html; charset=utf-8")
    assert looks_like_html("application/xhtml+xml")
    assert not looks_like_html("video/mp4")


@pytest.mark.asyncio
async def test_fetch_writes_body(tmp_path):
    body = b"\x00\x00\x00\x18ftypmp42" * 1000

    def handler(request):
        return httpx.Response(200, headers={"content-type": "video/mp4"}, content=body)

    destination = tmp_path / "video.mp4"
    written = await fetcher_for(handler).fetch(VIDEO_URL, str(destination), VIDEO_CONTENT_TYPES)

    assert written == len(body)
    assert destination.read_bytes() == body


@pytest.mark.asyncio
async def test_fetch_follows_redirects(tmp_path):
    def handler(request):
        if request.url.host == "media.example.com":
            return httpx.Response(302, headers={"location": "https://cdn.example.com/voice.mp3"})
        return httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=b"ID3 audio")

    destination = tmp_path / "voice.mp3"
    await fetcher_for(handler).fetch("https://media.example.com/voice.mp3", str(destination), AUDIO_CONTENT_TYPES)

    assert destination.read_bytes() == b"ID3 audio"


@pytest.mark.asyncio
async def test_not_found_reports_status(tmp_path):
    def handler(request):
        return httpx.Response(404, text="missing")

    with pytest.raises(UpstreamStatusError) as exc_info:
        await fetcher_for(handler).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)

    assert exc_info.value.status_code == 404
    assert "404" in exc_info.value.describe()
    assert exc_info.value.url == VIDEO_URL


@pytest.mark.asyncio
async def test_html_page_is_flagged_as_share_link(tmp_path):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text="<html></html>")

    with pytest.raises(UnexpectedContentType) as exc_info:
        await fetcher_for(handler).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)

    assert exc_info.value.looks_like_html is True
    assert "share link" in exc_info.value.message


@pytest.mark.asyncio
async def test_wrong_media_type_is_rejected(tmp_path):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG")

    with pytest.raises(UnexpectedContentType) as exc_info:
        await fetcher_for(handler).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)

    assert exc_info.value.looks_like_html is False
    assert "image/png" in exc_info.value.message


@pytest.mark.asyncio
async def test_subtitles_accept_plain_text(tmp_path):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/plain"}, text="1\n00:00:00,000 --> 00:00:01,000\nhi\n")

    destination = tmp_path / "subs.srt"
    await fetcher_for(handler).fetch("https://media.example.com/a.srt", str(destination), SUBTITLE_CONTENT_TYPES)

    assert destination.read_text().startswith("1\n")


@pytest.mark.asyncio
async def test_stalled_body_times_out(tmp_path):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "video/mp4"}, stream=StallingStream())

    destination = tmp_path / "v.mp4"
    with pytest.raises(ReadTimeout):
        await fetcher_for(handler, stall_timeout=0.2).fetch(VIDEO_URL, str(destination), VIDEO_CONTENT_TYPES)

    # the partial file is left for the caller's cleanup scope
    assert destination.read_bytes() == b"first chunk"


@pytest.mark.asyncio
async def test_slow_steady_body_is_not_a_stall(tmp_path):
    # total transfer time is well past the stall timeout, each gap is not
    def handler(request):
        return httpx.Response(200, headers={"content-type": "video/mp4"}, stream=TricklingStream())

    destination = tmp_path / "v.mp4"
    written = await fetcher_for(handler, stall_timeout=0.3).fetch(VIDEO_URL, str(destination), VIDEO_CONTENT_TYPES)

    assert written == 20 * 1024
    assert destination.stat().st_size == 20 * 1024


@pytest.mark.asyncio
async def test_slow_headers_time_out(tmp_path):
    async def handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200, headers={"content-type": "video/mp4"}, content=b"late")

    with pytest.raises(ConnectTimeout):
        await fetcher_for(handler, connect_timeout=0.2).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)


@pytest.mark.asyncio
async def test_connection_error_is_an_upstream_failure(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamFetchError) as exc_info:
        await fetcher_for(handler).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)

    assert "connection refused" in exc_info.value.message


@pytest.mark.asyncio
async def test_empty_body_is_an_error(tmp_path):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "video/mp4"}, content=b"")

    with pytest.raises(UpstreamFetchError, match="empty body"):
        await fetcher_for(handler).fetch(VIDEO_URL, str(tmp_path / "v.mp4"), VIDEO_CONTENT_TYPES)
