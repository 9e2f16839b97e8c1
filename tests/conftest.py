"""Shared fixtures: isolated settings, fake external tools and HTTP fakes."""

import sys
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import pytest

from app_settings import AppSettings
from catalog_store import CatalogStore
from pipeline_stages import ConversionStage, FetchStage, TilingStage

# Stand-ins for `vips dzsave` and `gdal_translate`: python -c snippets that take
# {input} {output} like the real tools and write what they would write.
TILER_CODE = (
    "import pathlib, sys\n"
    "src, out = pathlib.Path(sys.argv[1]), sys.argv[2]\n"
    "assert src.stat().st_size > 0, 'empty input'\n"
    "level = pathlib.Path(out + '_files') / '0'\n"
    "level.mkdir(parents=True)\n"
    "(level / '0_0.jpeg').write_bytes(b'tile')\n"
    "pathlib.Path(out + '.dzi').write_text('<Image TileSize=\"254\" Format=\"jpeg\"/>')\n"
)
FAKE_TILER = [sys.executable, "-c", TILER_CODE, "{input}", "{output}"]
FAKE_CONVERTER = [sys.executable, "-c", "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])",
                  "{input}", "{output}"]


def failing_tool(message: str) -> List[str]:
    code = f"import sys; sys.stderr.write({message!r}); sys.exit(1)"
    return [sys.executable, "-c", code, "{input}", "{output}"]


JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 2048


class CountingTilingStage(TilingStage):
    def __init__(self, command_template, timeout, calls: List[str]):
        super().__init__(command_template, timeout)
        self.calls = calls

    async def run(self, raster: Path, output_dir: Path) -> Path:
        self.calls.append("tile")
        return await super().run(raster, output_dir)


class CountingConversionStage(ConversionStage):
    def __init__(self, command_template, timeout, calls: List[str]):
        super().__init__(command_template, timeout)
        self.calls = calls

    async def run(self, source: Path, destination: Path) -> Path:
        self.calls.append("convert")
        return await super().run(source, destination)


class FakeWeb:
    """Routes MockTransport requests by URL and counts them."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.hits: Dict[str, int] = {}

    def add(self, url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[url] = handler

    def add_image(self, url: str, payload: bytes = JPEG_BYTES, content_type: str = "image/jpeg") -> None:
        self.add(url, lambda request: httpx.Response(200, headers={"Content-Type": content_type}, content=payload))

    def add_json(self, url: str, data, status_code: int = 200) -> None:
        self.add(url, lambda request: httpx.Response(status_code, json=data))

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = str(request.url).split("?", 1)[0]
        self.hits[key] = self.hits.get(key, 0) + 1
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    cfg = AppSettings(
        data_dir=tmp_path / "data",
        tiles_dir=tmp_path / "public" / "gigaimages",
        request_timeout_seconds=30,
        metadata_timeout_seconds=5,
        max_download_bytes=64 * 1024,
        tile_command=FAKE_TILER,
        convert_command=FAKE_CONVERTER,
        nasa_api_url="https://images-api.nasa.gov",
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def store(settings) -> CatalogStore:
    return CatalogStore(settings.catalog_path, settings.annotations_path)


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture
def stage_calls() -> List[str]:
    return []


@pytest.fixture
def tiling_stage(settings, stage_calls) -> CountingTilingStage:
    return CountingTilingStage(settings.tile_command, settings.request_timeout_seconds, stage_calls)


@pytest.fixture
def conversion_stage(settings, stage_calls) -> CountingConversionStage:
    return CountingConversionStage(settings.convert_command, settings.request_timeout_seconds, stage_calls)


@pytest.fixture
def fetch_stage_factory(settings):
    def _make(client: httpx.AsyncClient) -> FetchStage:
        return FetchStage(client, settings.max_download_bytes, settings.request_timeout_seconds)
    return _make
