"""
Fetch, conversion and tiling stages of the ingestion pipeline.

Each stage makes a single attempt and raises a typed IngestError on
failure. External tools run as asyncio subprocesses in their own process
group so a timeout can take down the whole tree.
"""

import asyncio
import logging
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Union
from urllib.parse import unquote, urlparse

import httpx

from app_settings import (
    ALLOWED_IMAGE_EXTENSIONS,
    DESCRIPTOR_BASENAME,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_USER_AGENT,
    PDS_RASTER_EXTENSIONS,
    TOOL_PROBE_TIMEOUT_SECONDS,
)
from pipeline_errors import (
    ConversionFailed,
    DownloadFailed,
    DownloadTimeout,
    DownloadTooLarge,
    NotAnImage,
    TilingFailed,
)

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 2000
OCTET_STREAM_TYPES = ("application/octet-stream", "binary/octet-stream", "application/x-pds")


# ------------------------------------------------------------------------------
# External commands
# ------------------------------------------------------------------------------

@dataclass
class CommandSucceeded:
    stdout: str
    stderr: str


@dataclass
class CommandFailed:
    reason: str
    stderr: str = ""
    returncode: int | None = None
    timed_out: bool = False

    @property
    def diagnostic(self) -> str:
        text = self.stderr.strip()
        if len(text) > MAX_DIAGNOSTIC_CHARS:
            text = "..." + text[-MAX_DIAGNOSTIC_CHARS:]
        return f"{self.reason}: {text}" if text else self.reason


CommandResult = Union[CommandSucceeded, CommandFailed]


def render_command(template: Sequence[str], input_path: Path, output_path: Path) -> List[str]:
    # str.replace, not format(): templates may carry literal braces (python -c snippets)
    return [
        part.replace("{input}", str(input_path)).replace("{output}", str(output_path))
        for part in template
    ]


async def _terminate(process: asyncio.subprocess.Process) -> None:
    try:
        # Graceful stop of the process group first
        if hasattr(os, "killpg") and process.pid:
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=2)
        except asyncio.TimeoutError:
            if hasattr(os, "killpg") and process.pid:
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
            await process.wait()
    except ProcessLookupError:
        pass


async def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run an external tool to completion, capturing both output streams."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return CommandFailed(reason=f"could not start {args[0]}: {e}")

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        return CommandFailed(reason=f"timed out after {timeout:g} seconds", timed_out=True)
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    if process.returncode != 0:
        return CommandFailed(
            reason=f"{Path(args[0]).name} exited with status {process.returncode}",
            stderr=stderr,
            returncode=process.returncode,
        )
    if stderr.strip():
        logger.debug("%s stderr: %s", Path(args[0]).name, stderr.strip())
    return CommandSucceeded(stdout=stdout, stderr=stderr)


async def check_tool_available(template: Sequence[str]) -> bool:
    """True when the tool in a command template is on PATH and answers --version."""
    if not template:
        return False
    executable = template[0]
    if shutil.which(executable) is None:
        return False
    result = await run_command([executable, "--version"], timeout=TOOL_PROBE_TIMEOUT_SECONDS)
    return isinstance(result, CommandSucceeded)


# ------------------------------------------------------------------------------
# Fetch
# ------------------------------------------------------------------------------

def url_suffix(url: str) -> str:
    return Path(unquote(urlparse(url).path)).suffix.lower()


def is_image_like(content_type: str | None, url: str) -> bool:
    """Best-effort content type check; servers often omit or generalize it."""
    if not content_type:
        return True
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type.startswith("image/"):
        return True
    # Archives serve TIFF and PDS rasters as opaque bytes; trust a raster extension then
    return media_type in OCTET_STREAM_TYPES and url_suffix(url) in ALLOWED_IMAGE_EXTENSIONS


@dataclass
class FetchResult:
    path: Path
    size: int
    content_type: str | None


class FetchStage:
    def __init__(self, client: httpx.AsyncClient, max_bytes: int, timeout: float):
        self.client = client
        self.max_bytes = max_bytes
        self.timeout = timeout

    async def run(self, url: str, destination: Path) -> FetchResult:
        logger.info("Downloading %s", url)
        try:
            result = await asyncio.wait_for(self._stream(url, destination), timeout=self.timeout)
        except BaseException as e:
            destination.unlink(missing_ok=True)
            if isinstance(e, asyncio.TimeoutError):
                raise DownloadTimeout(
                    f"Request timed out after {self.timeout:g} seconds. The server may be slow or unreachable."
                ) from e
            if isinstance(e, httpx.TimeoutException):
                raise DownloadTimeout("Request timed out. The server may be slow or unreachable.") from e
            if isinstance(e, httpx.ConnectError):
                raise DownloadFailed("Could not reach the URL. Please check the address.") from e
            if isinstance(e, httpx.HTTPError):
                raise DownloadFailed(f"Network error while downloading: {e}") from e
            raise
        logger.info("Download complete: %.1f MB", result.size / (1024 * 1024))
        return result

    async def _stream(self, url: str, destination: Path) -> FetchResult:
        loop = asyncio.get_running_loop()
        headers = {"User-Agent": DOWNLOAD_USER_AGENT}
        async with self.client.stream("GET", url, headers=headers, follow_redirects=True) as response:
            if not response.is_success:
                raise DownloadFailed(f"Server responded with HTTP {response.status_code}")

            content_type = response.headers.get("content-type")
            if not is_image_like(content_type, url):
                raise NotAnImage(f"URL does not point to an image (Content-Type: {content_type})")

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise DownloadTooLarge(
                    f"File is {int(declared)} bytes, above the {self.max_bytes} byte limit"
                )

            size = 0
            with destination.open("wb") as fh:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise DownloadTooLarge(f"Download exceeded the {self.max_bytes} byte limit")
                    await loop.run_in_executor(None, fh.write, chunk)

        if size == 0:
            raise DownloadFailed("Downloaded file is empty")
        return FetchResult(path=destination, size=size, content_type=content_type)


# ------------------------------------------------------------------------------
# Conversion (PDS .IMG -> GeoTIFF)
# ------------------------------------------------------------------------------

class ConversionStage:
    def __init__(self, command_template: Sequence[str], timeout: float):
        self.command_template = list(command_template)
        self.timeout = timeout

    @staticmethod
    def needs_conversion(path: Path) -> bool:
        return path.suffix.lower() in PDS_RASTER_EXTENSIONS

    async def run(self, source: Path, destination: Path) -> Path:
        logger.info("Converting %s to TIFF", source.name)
        args = render_command(self.command_template, source, destination)
        result = await run_command(args, timeout=self.timeout)
        if isinstance(result, CommandFailed):
            raise ConversionFailed(f"Raster conversion failed: {result.diagnostic}")
        if not destination.exists() or destination.stat().st_size == 0:
            raise ConversionFailed("Raster conversion failed: the tool produced no output file")
        return destination


# ------------------------------------------------------------------------------
# Tiling (Deep Zoom pyramid)
# ------------------------------------------------------------------------------

class TilingStage:
    def __init__(self, command_template: Sequence[str], timeout: float):
        self.command_template = list(command_template)
        self.timeout = timeout

    async def run(self, raster: Path, output_dir: Path) -> Path:
        """Build the pyramid inside output_dir and return its descriptor path."""
        output_dir.mkdir(parents=True, exist_ok=True)
        output_base = output_dir / DESCRIPTOR_BASENAME
        logger.info("Tiling %s into %s", raster.name, output_dir)
        args = render_command(self.command_template, raster, output_base)
        result = await run_command(args, timeout=self.timeout)
        if isinstance(result, CommandFailed):
            raise TilingFailed(
                f"Failed to process image. The file may be corrupted or in an unsupported format ({result.diagnostic})"
            )
        descriptor = output_base.with_suffix(".dzi")
        if not descriptor.exists():
            raise TilingFailed("Tiling tool finished but wrote no pyramid descriptor")
        logger.info("Tiling complete: %s", descriptor)
        return descriptor
