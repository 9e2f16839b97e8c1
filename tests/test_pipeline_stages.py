"""Fetch, conversion and tiling stages, and the subprocess runner under them."""

import asyncio
import sys

import httpx
import pytest

from conftest import FAKE_CONVERTER, JPEG_BYTES, failing_tool
from pipeline_errors import (
    ConversionFailed,
    DownloadFailed,
    DownloadTimeout,
    DownloadTooLarge,
    NotAnImage,
    TilingFailed,
)
from pipeline_stages import (
    CommandFailed,
    CommandSucceeded,
    ConversionStage,
    FetchStage,
    TilingStage,
    is_image_like,
    render_command,
    run_command,
)

IMAGE_URL = "https://example.org/images/moon.jpg"


# --- run_command ----------------------------------------------------------------

def test_run_command_captures_output():
    result = asyncio.run(run_command([sys.executable, "-c", "print('hello')"], timeout=30))
    assert isinstance(result, CommandSucceeded)
    assert result.stdout.strip() == "hello"


def test_run_command_reports_exit_status_and_stderr():
    code = "import sys; sys.stderr.write('VipsJpeg: premature end of file'); sys.exit(3)"
    result = asyncio.run(run_command([sys.executable, "-c", code], timeout=30))
    assert isinstance(result, CommandFailed)
    assert result.returncode == 3
    assert "premature end of file" in result.diagnostic


def test_run_command_times_out():
    result = asyncio.run(run_command([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5))
    assert isinstance(result, CommandFailed)
    assert result.timed_out


def test_run_command_missing_executable():
    result = asyncio.run(run_command(["/nonexistent/vips", "dzsave"], timeout=5))
    assert isinstance(result, CommandFailed)
    assert "could not start" in result.reason


def test_diagnostic_keeps_the_tail_of_long_stderr():
    failed = CommandFailed(reason="vips exited with status 1", stderr="x" * 5000 + "END")
    assert failed.diagnostic.endswith("END")
    assert len(failed.diagnostic) < 2100


def test_render_command_leaves_other_braces_alone(tmp_path):
    template = ["tool", "-c", "print({'a': 1})", "{input}", "{output}"]
    rendered = render_command(template, tmp_path / "in.jpg", tmp_path / "out")
    assert rendered == ["tool", "-c", "print({'a': 1})", str(tmp_path / "in.jpg"), str(tmp_path / "out")]


# --- content type -------------------------------------------------------------

@pytest.mark.parametrize("content_type, url, expected", [
    ("image/jpeg", IMAGE_URL, True),
    ("image/tiff; charset=binary", "https://example.org/x", True),
    (None, "https://example.org/x", True),
    ("application/octet-stream", "https://example.org/mars.IMG", True),
    ("application/octet-stream", "https://example.org/download", False),
    ("text/html; charset=utf-8", IMAGE_URL, False),
])
def test_is_image_like(content_type, url, expected):
    assert is_image_like(content_type, url) is expected


# --- fetch --------------------------------------------------------------------

def _fetch(fetch_stage_factory, handler, destination, url=IMAGE_URL):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_stage_factory(client).run(url, destination)
    return asyncio.run(go())


def test_fetch_writes_file(fetch_stage_factory, tmp_path):
    destination = tmp_path / "source.jpg"

    def handler(request):
        assert "GigaView" in request.headers["user-agent"]
        return httpx.Response(200, headers={"Content-Type": "image/jpeg"}, content=JPEG_BYTES)

    result = _fetch(fetch_stage_factory, handler, destination)
    assert result.size == len(JPEG_BYTES)
    assert destination.read_bytes() == JPEG_BYTES


def test_fetch_http_error_status(fetch_stage_factory, tmp_path):
    destination = tmp_path / "source.jpg"
    with pytest.raises(DownloadFailed, match="HTTP 404"):
        _fetch(fetch_stage_factory, lambda request: httpx.Response(404), destination)
    assert not destination.exists()


def test_fetch_rejects_html(fetch_stage_factory, tmp_path):
    handler = lambda request: httpx.Response(200, headers={"Content-Type": "text/html"}, content=b"<html>")
    with pytest.raises(NotAnImage):
        _fetch(fetch_stage_factory, handler, tmp_path / "source.jpg")


def test_fetch_rejects_declared_size_over_limit(fetch_stage_factory, settings, tmp_path):
    destination = tmp_path / "source.jpg"
    payload = b"\x00" * (settings.max_download_bytes + 1)
    handler = lambda request: httpx.Response(200, headers={"Content-Type": "image/jpeg"}, content=payload)
    with pytest.raises(DownloadTooLarge):
        _fetch(fetch_stage_factory, handler, destination)
    assert not destination.exists()


def test_fetch_stops_streaming_over_limit(fetch_stage_factory, settings, tmp_path):
    destination = tmp_path / "source.jpg"

    async def chunks():
        # no Content-Length: the limit has to be enforced while streaming
        for _ in range(settings.max_download_bytes // 1024 + 2):
            yield b"\x00" * 1024

    handler = lambda request: httpx.Response(200, headers={"Content-Type": "image/jpeg"}, content=chunks())
    with pytest.raises(DownloadTooLarge):
        _fetch(fetch_stage_factory, handler, destination)
    assert not destination.exists()


def test_fetch_empty_body(fetch_stage_factory, tmp_path):
    handler = lambda request: httpx.Response(200, headers={"Content-Type": "image/png"}, content=b"")
    with pytest.raises(DownloadFailed, match="empty"):
        _fetch(fetch_stage_factory, handler, tmp_path / "source.png")


def test_fetch_connection_refused(fetch_stage_factory, tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DownloadFailed, match="Could not reach"):
        _fetch(fetch_stage_factory, handler, tmp_path / "source.jpg")


def test_fetch_read_timeout(fetch_stage_factory, tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(DownloadTimeout):
        _fetch(fetch_stage_factory, handler, tmp_path / "source.jpg")


def test_fetch_wall_clock_limit_stops_a_trickling_server(settings, tmp_path):
    destination = tmp_path / "source.jpg"

    async def trickle():
        # every chunk arrives promptly, the whole body never does
        for _ in range(100):
            await asyncio.sleep(0.05)
            yield b"\x00" * 16

    def handler(request):
        return httpx.Response(200, headers={"Content-Type": "image/jpeg"}, content=trickle())

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            stage = FetchStage(client, settings.max_download_bytes, timeout=0.3)
            return await stage.run(IMAGE_URL, destination)

    with pytest.raises(DownloadTimeout, match="0.3 seconds"):
        asyncio.run(go())
    assert not destination.exists()


# --- conversion -----------------------------------------------------------------

def test_needs_conversion_only_for_pds_rasters(tmp_path):
    assert ConversionStage.needs_conversion(tmp_path / "source.IMG")
    assert ConversionStage.needs_conversion(tmp_path / "source.img")
    assert not ConversionStage.needs_conversion(tmp_path / "source.tif")


def test_conversion_runs_tool(tmp_path):
    source = tmp_path / "source.img"
    source.write_bytes(b"PDS_VERSION_ID = PDS3")
    stage = ConversionStage(FAKE_CONVERTER, timeout=30)
    converted = asyncio.run(stage.run(source, tmp_path / "converted.tif"))
    assert converted.read_bytes() == source.read_bytes()


def test_conversion_failure_carries_diagnostic(tmp_path):
    source = tmp_path / "source.img"
    source.write_bytes(b"garbage")
    stage = ConversionStage(failing_tool("ERROR 4: not recognized as a supported file format"), timeout=30)
    with pytest.raises(ConversionFailed, match="not recognized"):
        asyncio.run(stage.run(source, tmp_path / "converted.tif"))


def test_conversion_without_output_fails(tmp_path):
    source = tmp_path / "source.img"
    source.write_bytes(b"data")
    stage = ConversionStage([sys.executable, "-c", "pass", "{input}", "{output}"], timeout=30)
    with pytest.raises(ConversionFailed, match="no output"):
        asyncio.run(stage.run(source, tmp_path / "converted.tif"))


# --- tiling -------------------------------------------------------------------

def test_tiling_writes_descriptor(settings, tmp_path):
    raster = tmp_path / "source.jpg"
    raster.write_bytes(JPEG_BYTES)
    stage = TilingStage(settings.tile_command, timeout=30)
    descriptor = asyncio.run(stage.run(raster, tmp_path / "out"))
    assert descriptor == tmp_path / "out" / "tiles.dzi"
    assert descriptor.exists()
    assert (tmp_path / "out" / "tiles_files" / "0" / "0_0.jpeg").exists()


def test_tiling_failure_carries_diagnostic(tmp_path):
    raster = tmp_path / "source.jpg"
    raster.write_bytes(b"not really a jpeg")
    stage = TilingStage(failing_tool("VipsForeignLoad: file is not in a known format"), timeout=30)
    with pytest.raises(TilingFailed, match="not in a known format"):
        asyncio.run(stage.run(raster, tmp_path / "out"))


def test_tiling_without_descriptor_fails(tmp_path):
    raster = tmp_path / "source.jpg"
    raster.write_bytes(JPEG_BYTES)
    stage = TilingStage([sys.executable, "-c", "pass", "{input}", "{output}"], timeout=30)
    with pytest.raises(TilingFailed, match="no pyramid descriptor"):
        asyncio.run(stage.run(raster, tmp_path / "out"))
